import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


REST_BASE_URLS = {
    "spot": "https://api.binance.com",
    "usdm": "https://fapi.binance.com",
    "coinm": "https://dapi.binance.com",
}

TESTNET_REST_BASE_URLS = {
    "spot": "https://testnet.binance.vision",
    "usdm": "https://testnet.binancefuture.com",
    "coinm": "https://testnet.binancefuture.com",
}


def rest_base_url(market: str, testnet: bool = False) -> str:
    urls = TESTNET_REST_BASE_URLS if testnet else REST_BASE_URLS
    try:
        return urls[market]
    except KeyError:
        raise ValueError(f"unsupported market type: {market}") from None


def _credential(value: Optional[str]) -> Optional[str]:
    # Unresolved ${VAR} placeholders mean the variable is not set.
    if not value or (value.startswith("${") and value.endswith("}")):
        return None
    return value


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class BinanceRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ):
        exchange_cfg = config.section("exchange")
        self.base_url = (base_url or REST_BASE_URLS["usdm"]).rstrip("/")
        self.api_key: Optional[str] = _credential(api_key or exchange_cfg.get("api_key"))
        self.api_secret: Optional[str] = _credential(api_secret or exchange_cfg.get("api_secret"))
        self.recv_window = int(exchange_cfg.get("recv_window_ms", 5000))
        self.timeout = aiohttp.ClientTimeout(total=float(exchange_cfg.get("request_timeout_s", 15)))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    def sign(self, params: Dict[str, Any]) -> str:
        """HMAC-SHA256 of the url-encoded params, as Binance expects in ``signature``."""
        if not self.api_secret:
            raise RuntimeError("Binance API secret required for signed request")
        query = urlencode(params, doseq=True)
        return hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = dict(params or {})
        headers: Dict[str, str] = {}

        if signed:
            if not self.has_credentials:
                raise RuntimeError("Binance API key/secret required for signed request")
            params.setdefault("timestamp", int(time.time() * 1000))
            params.setdefault("recvWindow", self.recv_window)
            params["signature"] = self.sign(params)
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        async with session.request(method.upper(), url, params=params, headers=headers) as resp:
            text = await resp.text()
            payload = self._decode(text, resp.headers.get("Content-Type", ""))
            if resp.status >= 400:
                detail = payload if isinstance(payload, dict) else {}
                raise BinanceAPIError(resp.status, detail.get("code"), detail.get("msg"), text)
            return payload

    @staticmethod
    def _decode(text: str, content_type: str) -> Any:
        if "application/json" not in content_type:
            return text
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        # Signed params travel in the query string for orders too.
        return await self._request("POST", path, params=params, signed=signed)
