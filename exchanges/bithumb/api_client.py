"""
Bithumb REST API Adapter

Bithumb's v1 public API mirrors Upbit's: the same candle endpoints, the same
"KRW-{SYMBOL}" market codes and the same candle field names. The adapter
therefore reuses UpbitAdapter and only changes the base URL and the JWT claims.

Authentication differences:
    - HS256 instead of HS512
    - claims carry a millisecond `timestamp` next to access_key and nonce
    - /v1/accounts may return either a bare list or {"data": [...]}
"""

import time
import uuid
from typing import Any, Dict, List

from core.config import settings
from core.exceptions import ExchangeAPIError
from exchanges.upbit.api_client import UpbitAdapter


class BithumbAdapter(UpbitAdapter):
    """Adapter for the Bithumb KRW spot market."""

    name = "bithumb"
    display_name = "Bithumb"
    market = "domestic"
    BASE_URL = settings.bithumb_base_url

    JWT_ALGORITHM = "HS256"

    def _jwt_claims(self) -> Dict[str, Any]:
        return {
            "access_key": self._credential("api_key"),
            "nonce": str(uuid.uuid4()),
            "timestamp": int(time.time() * 1000),
        }

    def _accounts(self, payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict) and isinstance(payload.get("data"), list):
            return payload["data"]
        if isinstance(payload, list):
            return payload
        raise ExchangeAPIError(f"Unexpected {self.display_name} accounts payload", self.name, payload=payload)
