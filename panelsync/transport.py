from __future__ import annotations

import logging
from typing import Any, Optional

import requests
import urllib3

import config
from panelsync.exceptions import (
    AuthExpired,
    Conflict,
    PanelUnreachable,
    PermanentEndpointFailure,
    TransientEndpoint,
    UnrecognizedShape,
)

logger = logging.getLogger(__name__)

ALREADY_EXISTS = "already exists"


class PanelSession:
    """Authenticated HTTP session against one panel.

    Holds the cookie jar (3X-UI) or the bearer token (PasarGuard) and turns
    every HTTP outcome into either a decoded body or a `PanelError`.
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[int] = None,
        verify: Optional[bool] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        self.verify = config.VERIFY_SSL if verify is None else verify
        self.session = session if session is not None else requests.Session()
        self.token: Optional[str] = None
        if not self.verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def set_token(self, token: Optional[str]) -> None:
        self.token = token or None

    @property
    def authenticated(self) -> bool:
        return bool(self.token) or bool(self.session.cookies)

    def url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = kwargs.pop("headers", None) or {}
        headers.setdefault("Accept", "application/json")
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        method = method.upper()
        try:
            response = self.session.request(
                method,
                self.url(path),
                headers=headers,
                timeout=self.timeout,
                verify=self.verify,
                **kwargs,
            )
        except requests.Timeout as exc:
            raise TransientEndpoint(f"{method} {path} timed out", method, path) from exc
        except requests.ConnectionError as exc:
            raise PanelUnreachable(f"{method} {path}: {exc}", method, path) from exc
        except requests.RequestException as exc:
            raise TransientEndpoint(f"{method} {path}: {exc}", method, path) from exc

        logger.debug("%s %s -> %s", method, path, response.status_code)
        self._raise_for_status(method, path, response)
        return response

    def request_json(self, method: str, path: str, **kwargs) -> Any:
        response = self.request(method, path, **kwargs)
        return decode_json(response)

    @staticmethod
    def _raise_for_status(method: str, path: str, response: requests.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        body = response.text or ""
        if status == 401:
            raise AuthExpired()
        if status in (404, 405):
            raise TransientEndpoint(f"{method} {path} returned {status}", method, path, status)
        if status == 409 or ALREADY_EXISTS in body.lower():
            raise Conflict(f"{method} {path}: {body.strip() or 'user already exists'}")
        if status >= 500:
            raise TransientEndpoint(f"{method} {path} returned {status}: {body}", method, path, status)
        raise PermanentEndpointFailure(
            f"{method} {path} returned {status}: {body}", method, path, status
        )


def decode_json(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise UnrecognizedShape(response.content, f"response is not JSON: {response.text[:512]}") from exc
