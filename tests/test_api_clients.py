"""Tests for the blog/user backend clients."""

import httpx

from tokenkeeper.service.api_clients import BlogService, UserService


def _recording_transport(calls, status_code=200, payload=None):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if payload is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


class TestBlogService:
    async def test_bearer_header_and_data(self, backend):
        service = BlogService("http://api.test/", "tok-1", transport=backend.transport())
        response = await service.list_blogs()
        assert response.ok
        assert [b["id"] for b in response.data] == ["1", "2"]
        assert backend.authorizations == ["Bearer tok-1"]
        await service.aclose()

    async def test_update_access_token_applies_to_next_call(self, backend):
        service = BlogService("http://api.test", "tok-1", transport=backend.transport())
        service.update_access_token("tok-2")
        await service.get_blog("1")
        assert backend.authorizations[-1] == "Bearer tok-2"
        await service.aclose()

    async def test_error_message_from_body(self, backend):
        service = BlogService("http://api.test", "tok-1", transport=backend.transport())
        response = await service.get_blog("missing")
        assert not response.ok
        assert response.status_code == 404
        assert response.error == "Blog not found"
        await service.aclose()

    async def test_write_operations(self):
        calls = []
        service = BlogService("http://api.test", "tok", transport=_recording_transport(calls, 200, {"id": "9"}))
        created = await service.create_blog({"title": "New"})
        await service.update_blog("9", {"title": "Newer"})
        assert created.data == {"id": "9"}
        assert [(c.method, c.url.path) for c in calls] == [("POST", "/blogs"), ("PUT", "/blogs/9")]
        await service.aclose()

    async def test_delete_without_body(self):
        calls = []
        service = BlogService("http://api.test", "tok", transport=_recording_transport(calls, 204))
        response = await service.delete_blog("9")
        assert response.ok
        assert response.data is None
        await service.aclose()

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        service = BlogService("http://api.test", "tok", transport=httpx.MockTransport(handler))
        response = await service.list_blogs()
        assert response.error == "No response from server"
        await service.aclose()


class TestUserService:
    async def test_get_and_delete_user(self):
        calls = []
        service = UserService("http://api.test", "tok", transport=_recording_transport(calls, 200, {"id": "u1"}))
        assert (await service.get_user("u1")).data == {"id": "u1"}
        await service.list_users()
        await service.update_user("u1", {"name": "Ada"})
        await service.delete_user("u1")
        assert [(c.method, c.url.path) for c in calls] == [
            ("GET", "/users/u1"),
            ("GET", "/users"),
            ("PUT", "/users/u1"),
            ("DELETE", "/users/u1"),
        ]
        assert calls[0].headers["Authorization"] == "Bearer tok"
        await service.aclose()


class TestMalformedResponses:
    async def test_success_with_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        service = BlogService("http://api.test", "tok", transport=httpx.MockTransport(handler))
        response = await service.list_blogs()
        assert not response.ok
        assert response.data is None
        assert response.error == "Invalid response from server"
        assert response.status_code == 200
        await service.aclose()
