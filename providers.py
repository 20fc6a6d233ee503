# providers.py
import logging
from typing import Dict, List, Optional

import httpx
import requests
from web3 import Web3
from web3.exceptions import Web3RPCError

logger = logging.getLogger(__name__)

INVALID_RANGE_MARKERS = ("invalid block range", "header not found", "block range", "exceed maximum block range")


def _rpc_error_payload(exc: Exception) -> Optional[dict]:
    # web3 raises ValueError(dict) / Web3RPCError(rpc_response=...) for JSON-RPC errors
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict) and isinstance(response.get("error"), dict):
        return response["error"]
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0]
    return None


def is_invalid_range(exc: Exception) -> bool:
    payload = _rpc_error_payload(exc)
    message = str(payload.get("message", "")) if payload else str(exc)
    return any(marker in message.lower() for marker in INVALID_RANGE_MARKERS)


def is_transient_fault(exc: Exception) -> bool:
    """
    True for faults that should move the caller to the next endpoint:
    JSON-RPC server errors, HTTP 5xx, timeouts, connection failures and
    invalid block range rejections.
    """
    if isinstance(exc, (TimeoutError, ConnectionError, requests.Timeout, requests.ConnectionError, httpx.TransportError)):
        return True
    if isinstance(exc, (requests.HTTPError, httpx.HTTPStatusError)):
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
        return status is not None and status >= 500
    payload = _rpc_error_payload(exc)
    if payload is not None:
        code = payload.get("code")
        if isinstance(code, int) and (-32099 <= code <= -32000 or code == -32603):
            return True
    if isinstance(exc, (Web3RPCError, ValueError)) or payload is not None:
        return is_invalid_range(exc)
    return False


class RpcProviderPool:
    """
    Ordered JSON-RPC endpoints for one chain. `rotate()` advances circularly;
    callers rotate after a transient fault. Single writer (one polling loop).
    """

    def __init__(self, chain: str, endpoints: List[str], timeout: float = 10.0):
        if not endpoints:
            raise ValueError(f"No RPC endpoints configured for chain {chain}")
        self.chain = chain
        self.endpoints = list(endpoints)
        self.timeout = timeout
        self._index = 0
        self._clients: Dict[str, Web3] = {}

    def __len__(self) -> int:
        return len(self.endpoints)

    def current_endpoint(self) -> str:
        return self.endpoints[self._index]

    def rotate(self) -> str:
        previous = self.current_endpoint()
        self._index = (self._index + 1) % len(self.endpoints)
        logger.warning(f"[{self.chain}] RPC rotate: {previous} -> {self.current_endpoint()}")
        return self.current_endpoint()

    def web3(self) -> Web3:
        url = self.current_endpoint()
        client = self._clients.get(url)
        if client is None:
            client = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.timeout}))
            self._clients[url] = client
        return client

    def call(self, fn, *args, **kwargs):
        """
        Runs fn(web3, ...) against the current endpoint, rotating through the
        pool on transient faults. Tries each endpoint at most once.
        """
        last_exc = None
        for _ in range(len(self.endpoints)):
            try:
                return fn(self.web3(), *args, **kwargs)
            except Exception as e:
                if not is_transient_fault(e):
                    raise
                last_exc = e
                logger.warning(f"[{self.chain}] transient RPC fault on {self.current_endpoint()}: {e}")
                self.rotate()
        raise last_exc


def build_provider_pools(rpc_urls: Dict[str, List[str]], timeout: float = 10.0) -> Dict[str, RpcProviderPool]:
    return {chain: RpcProviderPool(chain, urls, timeout=timeout) for chain, urls in rpc_urls.items() if urls}
