"""
Broker User Client - RemoteClient for message-broker users over REST.

Talks to the broker service's users API:

    POST|GET|PUT|DELETE {endpoint}/v1/brokers/{broker-id}/users/{username}
    GET                 {endpoint}/v1/brokers/{broker-id}/users

and classifies HTTP failures into the error taxonomy.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from errors import (
    ClassifiedError,
    ConflictError,
    NotFoundError,
    PermanentError,
    TransientError,
    classify,
)
from identifiers import ResourceIdentifier
from plugins.resources.base import RemoteClient
from plugins.resources.mq_user.models import UserDescription, UserList

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}
TRANSIENT_ERROR_TYPES = {"ThrottlingException", "TooManyRequestsException", "InternalServerErrorException"}


class RemoteAPIError(Exception):
    """Raw error returned by the broker API, kept as the cause of a ClassifiedError."""

    def __init__(self, status: int, error_type: str, message: str):
        self.status = status
        self.error_type = error_type
        self.message = message
        super().__init__(f"{status} {error_type}: {message}")


def classify_response(status: int, body: str, error_type: Optional[str] = None) -> ClassifiedError:
    """
    Map an HTTP error response onto the error taxonomy.

    Args:
        status: HTTP status code.
        body: Raw response body (JSON with a ``message`` field, if any).
        error_type: Value of the ``x-amzn-ErrorType`` header, if present.
    """
    message = body
    try:
        payload = json.loads(body) if body else {}
        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("Message") or body
    except json.JSONDecodeError:
        pass

    error_type = (error_type or "").split(":")[0]
    cause = RemoteAPIError(status, error_type or "UnknownError", message)

    if status == 404 or error_type == "NotFoundException":
        return NotFoundError("remote object not found", cause)
    if status == 409 or error_type == "ConflictException":
        return ConflictError("concurrent modification", cause)
    if status in TRANSIENT_STATUSES or status >= 500 or error_type in TRANSIENT_ERROR_TYPES:
        return TransientError("remote service unavailable or throttling", cause)
    return PermanentError("request rejected", cause)


class MQUserClient(RemoteClient):
    """
    RemoteClient for broker users.

    The HTTP session is owned by the caller's ReconcileSession; this client
    never opens or closes sessions itself.
    """

    def __init__(
        self,
        http: aiohttp.ClientSession,
        endpoint: str,
        access_token: str = "",
        request_timeout: float = 30.0,
        page_size: int = 100,
    ):
        self.http = http
        self.endpoint = endpoint.rstrip("/")
        self.access_token = access_token
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.page_size = page_size

    # RemoteClient interface

    async def create(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        body = dict(request)
        broker_id = body.pop("brokerId", "")
        username = body.pop("username", "")
        if not broker_id or not username:
            raise PermanentError("create request needs brokerId and username")
        await self._request("POST", self._user_path(broker_id, username), body=body)
        # CreateUser returns no data.
        return None

    async def read(self, identifier: ResourceIdentifier) -> Optional[Dict[str, Any]]:
        broker_id, username = identifier.parts
        data = await self._request("GET", self._user_path(broker_id, username))
        if not data:
            return None
        try:
            description = UserDescription.model_validate(data)
        except ValidationError as e:
            raise PermanentError(f"malformed DescribeUser response for {identifier}", e)
        return description.model_dump(by_alias=True, exclude_none=True)

    async def update(
        self, identifier: ResourceIdentifier, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        broker_id, username = identifier.parts
        body = {k: v for k, v in fields.items() if k not in ("brokerId", "username")}
        await self._request("PUT", self._user_path(broker_id, username), body=body)
        return None

    async def delete(self, identifier: ResourceIdentifier) -> None:
        broker_id, username = identifier.parts
        await self._request("DELETE", self._user_path(broker_id, username))

    async def list(self, parent: Optional[str] = None) -> List[Dict[str, Any]]:
        if not parent:
            raise PermanentError("listing broker users requires a broker ID")

        users: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"maxResults": self.page_size}
        while True:
            data = await self._request("GET", f"/v1/brokers/{quote(parent, safe='')}/users", params=params)
            try:
                page = UserList.model_validate(data or {})
            except ValidationError as e:
                raise PermanentError(f"malformed ListUsers response for broker {parent}", e)
            users.extend(u.model_dump(by_alias=True, exclude_none=True) for u in page.users)
            if not page.next_token:
                return users
            params["nextToken"] = page.next_token

    # Private helper methods

    def _user_path(self, broker_id: str, username: str) -> str:
        return f"/v1/brokers/{quote(broker_id, safe='')}/users/{quote(username, safe='')}"

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.endpoint}{path}"
        try:
            async with self.http.request(
                method,
                url,
                json=body,
                params=params,
                headers=self._get_headers(),
                timeout=self.timeout,
            ) as response:
                text = await response.text()
                if response.status >= 400:
                    raise classify_response(
                        response.status, text, response.headers.get("x-amzn-ErrorType")
                    )
        except ClassifiedError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise classify(e)

        logger.debug(f"{method} {path} -> {response.status}")
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PermanentError(f"malformed response from {method} {path}", e)
