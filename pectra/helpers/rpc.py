"""
Raw JSON-RPC access on top of web3's providers.

The probe needs the untouched response (a result, an error object, or a
transport failure) rather than web3's formatted return values, so calls go
straight through ``provider.make_request``.
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.providers import BaseProvider, HTTPProvider

from pectra.errors import TransportError

logger = logging.getLogger(__name__)


def make_provider(rpc_url: str, timeout: float) -> HTTPProvider:
    """HTTP provider with a hard request timeout and web3's automatic retries disabled."""
    return HTTPProvider(
        rpc_url,
        request_kwargs={"timeout": timeout},
        exception_retry_configuration=None,
    )


def make_web3(rpc_url: str, timeout: float) -> Web3:
    return Web3(make_provider(rpc_url, timeout))


def http_error_body(http_response: Optional[requests.Response]) -> Optional[Dict[str, Any]]:
    """The JSON-RPC error object carried by a non-2xx reply, if there is one."""
    if http_response is None:
        return None
    try:
        body = http_response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body
    return None


def raw_request(provider: BaseProvider, method: str, params: List[Any]) -> Dict[str, Any]:
    """
    Issue one JSON-RPC request and return the decoded response object.

    Raises:
        TransportError: Timeout, connection failure, HTTP error status
            without a JSON-RPC error body, or a body that is not a JSON-RPC
            response object
    """
    logger.debug("-> %s %s", method, params)
    try:
        response = provider.make_request(method, params)
    except requests.exceptions.Timeout as exc:
        raise TransportError(f"{method} timed out: {exc}") from exc
    except requests.exceptions.HTTPError as exc:
        # Some back ends send JSON-RPC error objects with a 4xx/5xx status
        response = http_error_body(exc.response)
        if response is None:
            raise TransportError(f"{method} failed: {exc}") from exc
        logger.debug("%s answered HTTP %s with a JSON-RPC error", method, exc.response.status_code)
    except (requests.exceptions.RequestException, Web3Exception, OSError) as exc:
        raise TransportError(f"{method} failed: {exc}") from exc
    except ValueError as exc:
        # json decoding of the body
        raise TransportError(f"{method} returned malformed JSON: {exc}") from exc

    if not isinstance(response, dict) or ("result" not in response and "error" not in response):
        raise TransportError(f"{method} returned a non JSON-RPC response: {response!r}")
    return dict(response)

