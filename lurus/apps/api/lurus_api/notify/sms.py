"""SMS transport (Aliyun Dysms-compatible RPC API).

Only the interface matters to the core: send(phone, template_code, params).
Requests are signed with the RPC v1 scheme (HMAC-SHA1 over the canonicalised
query string).

Environment Variables:
- SMS_ENABLED: true to enable phone OTP
- SMS_ACCESS_KEY_ID / SMS_ACCESS_KEY_SECRET: API credentials
- SMS_SIGN_NAME: Registered SMS signature
- SMS_ENDPOINT: API endpoint (default https://dysmsapi.aliyuncs.com)
- SMS_REGION: Region id (default cn-hangzhou)
"""

import base64
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

import httpx

from lurus_api.config.env import get_sms_credentials, is_sms_enabled
from lurus_api.config.options import option_store
from lurus_api.errors import ServiceUnavailableError, UpstreamError
from lurus_api.utils.sanitize import mask_phone

logger = logging.getLogger(__name__)

SMS_TIMEOUT_SECONDS = 15.0

TEMPLATE_OPTIONS = {
    "login": "SMSTemplateLogin",
    "register": "SMSTemplateRegister",
    "reset": "SMSTemplateReset",
    "bind": "SMSTemplateBind",
}


def template_code_for(purpose: str) -> str:
    """Template code configured for a purpose, falling back to SMSTemplateDefault."""
    option_key = TEMPLATE_OPTIONS.get(purpose)
    code = option_store.get(option_key, "") if option_key else ""
    return code or option_store.get("SMSTemplateDefault", "")


def _percent_encode(value: str) -> str:
    return quote(value, safe="~")


def sign_request(params: dict[str, str], access_key_secret: str, method: str = "POST") -> str:
    """RPC v1 signature: Base64(HMAC-SHA1(secret + "&", string_to_sign))."""
    canonical = "&".join(
        f"{_percent_encode(k)}={_percent_encode(v)}" for k, v in sorted(params.items())
    )
    string_to_sign = f"{method}&{_percent_encode('/')}&{_percent_encode(canonical)}"
    digest = hmac.new(
        (access_key_secret + "&").encode("utf-8"),
        string_to_sign.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class SmsClient:
    """SendSms client."""

    def __init__(self, credentials: Optional[dict[str, str]] = None):
        self.credentials = credentials or get_sms_credentials()

    def build_params(self, phone: str, template_code: str, template_param: dict) -> dict[str, str]:
        params = {
            "AccessKeyId": self.credentials["access_key_id"],
            "Action": "SendSms",
            "Format": "JSON",
            "PhoneNumbers": phone,
            "RegionId": self.credentials["region"],
            "SignName": self.credentials["sign_name"],
            "SignatureMethod": "HMAC-SHA1",
            "SignatureNonce": uuid.uuid4().hex,
            "SignatureVersion": "1.0",
            "TemplateCode": template_code,
            "TemplateParam": json.dumps(template_param, separators=(",", ":")),
            "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "Version": "2017-05-25",
        }
        params["Signature"] = sign_request(params, self.credentials["access_key_secret"])
        return params

    async def send(self, phone: str, template_code: str, template_param: dict) -> None:
        """Send one templated SMS.

        Raises:
            UpstreamError: Transport failure or gateway rejection
        """
        params = self.build_params(phone, template_code, template_param)
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.credentials["endpoint"], data=params, timeout=SMS_TIMEOUT_SECONDS
                )
                response.raise_for_status()
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "SMS send failed",
                extra={"event": "sms.send.failed", "phone": mask_phone(phone), "error": str(e)},
            )
            raise UpstreamError("Failed to send SMS verification code") from e

        if result.get("Code") != "OK":
            logger.error(
                "SMS gateway rejected request",
                extra={
                    "event": "sms.send.rejected",
                    "phone": mask_phone(phone),
                    "gateway_code": result.get("Code"),
                    "gateway_message": result.get("Message"),
                },
            )
            raise UpstreamError("Failed to send SMS verification code")

        logger.info(
            "SMS sent",
            extra={"event": "sms.send.ok", "phone": mask_phone(phone), "biz_id": result.get("BizId")},
        )


def get_sms_client() -> Optional[SmsClient]:
    """FastAPI dependency (override in tests). None while SMS is disabled."""
    if not is_sms_enabled():
        return None
    try:
        return SmsClient()
    except ValueError as e:
        logger.error("SMS enabled but not configured", extra={"event": "sms.unconfigured", "error": str(e)})
        raise ServiceUnavailableError("SMS service is not configured") from e
