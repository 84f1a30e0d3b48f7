from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar

import httpx

from tokenkeeper.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class ApiResponse(Generic[T]):
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BaseApiClient:
    """Backend client that sends the bound access token as a Bearer credential.

    The token is read on every request, so rebinding after a refresh takes
    effect for the very next call.
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def update_access_token(self, access_token: str) -> None:
        if self.access_token == access_token:
            logger.debug("api_client_token_unchanged", client=type(self).__name__)
            return
        self.access_token = access_token
        logger.debug("api_client_token_updated", client=type(self).__name__)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _request(self, method: str, path: str, json: Any = None) -> ApiResponse[Any]:
        try:
            response = await self._http.request(method, path, json=json, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("api_request_failed", method=method, path=path, error=str(exc))
            return ApiResponse(error="No response from server")
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = body.get("error") if isinstance(body, dict) else None
            if isinstance(message, dict):
                message = message.get("message")
            logger.error("api_error", method=method, path=path, status_code=response.status_code)
            return ApiResponse(error=message or "API Error", status_code=response.status_code)
        if response.status_code == 204 or not response.content:
            return ApiResponse(status_code=response.status_code)
        try:
            data = response.json()
        except ValueError:
            logger.error("api_invalid_response", method=method, path=path, status_code=response.status_code)
            return ApiResponse(error="Invalid response from server", status_code=response.status_code)
        return ApiResponse(data=data, status_code=response.status_code)


class BlogService(BaseApiClient):
    async def list_blogs(self) -> ApiResponse[List[Dict[str, Any]]]:
        return await self._request("GET", "/blogs")

    async def get_blog(self, blog_id: str) -> ApiResponse[Dict[str, Any]]:
        return await self._request("GET", f"/blogs/{blog_id}")

    async def create_blog(self, blog: Dict[str, Any]) -> ApiResponse[Dict[str, Any]]:
        return await self._request("POST", "/blogs", json=blog)

    async def update_blog(self, blog_id: str, blog: Dict[str, Any]) -> ApiResponse[Dict[str, Any]]:
        return await self._request("PUT", f"/blogs/{blog_id}", json=blog)

    async def delete_blog(self, blog_id: str) -> ApiResponse[None]:
        return await self._request("DELETE", f"/blogs/{blog_id}")


class UserService(BaseApiClient):
    async def list_users(self) -> ApiResponse[List[Dict[str, Any]]]:
        return await self._request("GET", "/users")

    async def get_user(self, user_id: str) -> ApiResponse[Dict[str, Any]]:
        return await self._request("GET", f"/users/{user_id}")

    async def update_user(self, user_id: str, user: Dict[str, Any]) -> ApiResponse[Dict[str, Any]]:
        return await self._request("PUT", f"/users/{user_id}", json=user)

    async def delete_user(self, user_id: str) -> ApiResponse[None]:
        return await self._request("DELETE", f"/users/{user_id}")


__all__ = ["ApiResponse", "BaseApiClient", "BlogService", "UserService"]
