"""
M-Pesa (Vodacom / Movitel, Mozambique) C2B client.

In the sandbox environment no request leaves the process: the client answers
with a successful mock so checkout flows can be exercised end to end.
"""
import re
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any

import httpx

from storefront.app.core.logging import get_logger
from storefront.app.core.settings import Settings, get_settings

logger = get_logger(__name__)

SUCCESS_CODE = "INS-0"
MOBILE_PREFIXES = ("84", "85", "86", "87")


class MpesaError(Exception):
    """Provider rejected the request or could not be reached."""


@dataclass(frozen=True)
class ProviderConfig:
    api_key: Optional[str]
    service_provider_code: Optional[str]
    base_url: str


def format_phone_number(phone: str) -> str:
    """Normalize to the 258XXXXXXXXX MSISDN form expected by the providers."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("258"):
        return digits
    if digits.startswith(MOBILE_PREFIXES) or len(digits) == 9:
        return "258" + digits
    return digits


class MpesaClient:
    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.environment = settings.MPESA_ENVIRONMENT
        self.timeout = settings.MPESA_TIMEOUT_SECONDS
        self.providers: Dict[str, ProviderConfig] = {
            "vodacom": ProviderConfig(
                settings.MPESA_VODACOM_API_KEY,
                settings.MPESA_VODACOM_SERVICE_PROVIDER_CODE,
                settings.MPESA_VODACOM_BASE_URL,
            ),
            "movitel": ProviderConfig(
                settings.MPESA_MOVITEL_API_KEY,
                settings.MPESA_MOVITEL_SERVICE_PROVIDER_CODE,
                settings.MPESA_MOVITEL_BASE_URL,
            ),
        }

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "sandbox"

    async def initiate_c2b(
        self,
        provider: str,
        phone: str,
        amount: Decimal,
        transaction_reference: str,
        conversation_id: str,
        description: str,
    ) -> Dict[str, Any]:
        """
        Start a customer-to-business payment.
        Returns the provider response; raises MpesaError on rejection.
        """
        config = self.providers.get(provider)
        if config is None:
            raise MpesaError(f"Unknown M-Pesa provider '{provider}'")

        request = {
            "input_ServiceProviderCode": config.service_provider_code or "",
            "input_CustomerMSISDN": format_phone_number(phone),
            "input_Amount": str(amount),
            "input_TransactionReference": transaction_reference,
            "input_ThirdPartyConversationID": conversation_id,
            "input_PurchasedItemsDesc": description,
        }

        if self.is_sandbox:
            return {
                "output_TransactionID": f"MOCK_TXN_{int(time.time() * 1000)}",
                "output_ConversationID": conversation_id,
                "output_ResponseCode": SUCCESS_CODE,
                "output_ResponseDesc": "Payment processed successfully (SANDBOX)",
            }

        if not config.api_key:
            raise MpesaError(f"M-Pesa configuration missing for {provider}")

        url = f"{config.base_url}/c2bpayment/singleStage"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(
                    url,
                    json=request,
                    headers={"Authorization": f"Bearer {config.api_key}", "Origin": "*"},
                )
        except httpx.TimeoutException:
            logger.warning("M-Pesa request timed out", provider=provider)
            raise MpesaError("M-Pesa request timed out")
        except httpx.HTTPError as e:
            logger.warning("M-Pesa request failed", provider=provider, error=str(e))
            raise MpesaError(f"M-Pesa network error: {e}")

        try:
            data = r.json()
        except ValueError:
            data = {}
        if not r.is_success or data.get("output_ResponseCode") not in (None, SUCCESS_CODE):
            desc = data.get("output_ResponseDesc") or f"HTTP {r.status_code}"
            logger.warning("M-Pesa rejected payment", provider=provider, status=r.status_code, desc=desc)
            raise MpesaError(f"M-Pesa payment failed: {desc}")
        return data
