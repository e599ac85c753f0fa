import unittest
from unittest.mock import AsyncMock, patch

import httpx
from fastapi import HTTPException

from codelink import auth, config


class ValidateTokenTests(unittest.IsolatedAsyncioTestCase):
    async def test_returns_identity_id(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.headers["Authorization"], "Bearer jwt-1")
            self.assertEqual(request.headers["apikey"], "anon")
            return httpx.Response(200, json={"id": "user-1", "email": "a@b.c"})

        with patch.object(config, "AUTH_USER_URL", "http://idp.test/auth/v1/user"), patch.object(
            config, "AUTH_API_KEY", "anon"
        ):
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                self.assertEqual(await auth.validate_token("jwt-1", http), "user-1")

    async def test_rejected_token(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "invalid JWT"})

        with patch.object(config, "AUTH_USER_URL", "http://idp.test/auth/v1/user"):
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                self.assertIsNone(await auth.validate_token("bad", http))

    async def test_non_json_body_is_rejected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        with patch.object(config, "AUTH_USER_URL", "http://idp.test/auth/v1/user"):
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                self.assertIsNone(await auth.validate_token("jwt-1", http))

    async def test_non_object_body_is_rejected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["user-1"])

        with patch.object(config, "AUTH_USER_URL", "http://idp.test/auth/v1/user"):
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                self.assertIsNone(await auth.validate_token("jwt-1", http))

    async def test_unconfigured_provider(self) -> None:
        with patch.object(config, "AUTH_USER_URL", ""):
            self.assertIsNone(await auth.validate_token("jwt-1"))


class RequireUserTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_header(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await auth.require_user(None)
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.detail, "Missing or invalid authorization header")

    async def test_wrong_scheme(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await auth.require_user("Basic abc")
        self.assertEqual(ctx.exception.status_code, 401)

    async def test_invalid_token(self) -> None:
        with patch.object(auth, "validate_token", new=AsyncMock(return_value=None)):
            with self.assertRaises(HTTPException) as ctx:
                await auth.require_user("Bearer nope")
        self.assertEqual(ctx.exception.detail, "Invalid token")

    async def test_valid_token(self) -> None:
        with patch.object(auth, "validate_token", new=AsyncMock(return_value="user-1")) as validate:
            self.assertEqual(await auth.require_user("Bearer jwt-1"), "user-1")
        validate.assert_awaited_once_with("jwt-1")


if __name__ == "__main__":
    unittest.main()
