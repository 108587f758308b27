import json
import unittest
from unittest.mock import patch

import httpx

from toolgate.daemon.control import AccessMode, ActionSession, EffectError, ErrorCode, Identity, TargetDescriptor
from toolgate.daemon.platform import HttpPlatformClient

USER = Identity(id="user-1")
TARGET = TargetDescriptor(action="apply_tool", resource_type="publication", resource_id="7", internal={"rev": 3})
SESSION = ActionSession(
    token="as_" + "a" * 32,
    owner_identity_id="user-1",
    target=TARGET,
    inputs_digest="d" * 64,
    created_at=1.0,
    ttl_seconds=300,
    inputs={"tool": "summarize"},
)


def _client(handler) -> HttpPlatformClient:
    transport = httpx.MockTransport(handler)
    http = httpx.Client(base_url="http://platform.test", transport=transport)
    return HttpPlatformClient("http://platform.test", client=http)


class PermissionTests(unittest.TestCase):
    def test_allowed(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"allowed": True})

        self.assertTrue(_client(handler).can_access(USER, TARGET, AccessMode.WRITE))
        self.assertEqual(seen["path"], "/permissions/check")
        self.assertEqual(seen["body"]["mode"], "write")
        self.assertEqual(seen["body"]["target"]["resource_id"], "7")

    def test_denied(self):
        client = _client(lambda request: httpx.Response(200, json={"allowed": False}))
        self.assertFalse(client.can_access(USER, TARGET, AccessMode.READ))

    def test_platform_error_denies(self):
        client = _client(lambda request: httpx.Response(500, text="oops"))
        self.assertFalse(client.can_access(USER, TARGET, AccessMode.WRITE))

    def test_transport_error_denies(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        self.assertFalse(_client(handler).can_access(USER, TARGET, AccessMode.WRITE))


class ApplyTests(unittest.TestCase):
    def test_apply_sends_session_token_as_idempotency_key(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                201,
                json={"resource_type": "publication", "resource_id": 99, "url": "https://p.test/99"},
            )

        ref = _client(handler).apply(TARGET, {"confirm": True}, session=SESSION)

        self.assertEqual(seen["path"], "/actions/apply_tool")
        self.assertEqual(seen["key"], SESSION.token)
        self.assertEqual(seen["body"]["params"], {"confirm": True})
        self.assertEqual(seen["body"]["target"]["internal"], {"rev": 3})
        self.assertEqual(ref.resource_id, "99")
        self.assertEqual(ref.url, "https://p.test/99")

    def test_client_error_is_validation_failure(self):
        client = _client(lambda request: httpx.Response(422, json={"message": "Publication is locked"}))

        with self.assertRaises(EffectError) as ctx:
            client.apply(TARGET, {}, session=SESSION)

        self.assertEqual(ctx.exception.code, ErrorCode.VALIDATION_FAILED)
        self.assertEqual(str(ctx.exception), "Publication is locked")

    def test_server_error_is_internal(self):
        client = _client(lambda request: httpx.Response(502))
        with self.assertRaises(EffectError) as ctx:
            client.apply(TARGET, {}, session=SESSION)
        self.assertEqual(ctx.exception.code, ErrorCode.INTERNAL_ERROR)

    def test_malformed_response(self):
        client = _client(lambda request: httpx.Response(200, json={"id": 1}))
        with self.assertRaises(EffectError):
            client.apply(TARGET, {}, session=SESSION)

    def test_forward_tool_call(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"echo": body["arguments"], "path": request.url.path})

        data = _client(handler).call_tool(USER, "create_publication", {"title": "x"})
        self.assertEqual(data, {"echo": {"title": "x"}, "path": "/tools/create_publication"})


class FromEnvTests(unittest.TestCase):
    def test_unset_url(self):
        with patch.dict("os.environ", {"TOOLGATE_PLATFORM_URL": ""}):
            self.assertIsNone(HttpPlatformClient.from_env())

    def test_configured_url(self):
        with patch.dict("os.environ", {"TOOLGATE_PLATFORM_URL": "http://platform.test/api/"}):
            client = HttpPlatformClient.from_env()
        self.addCleanup(client.close)
        self.assertEqual(client.base_url, "http://platform.test/api")


if __name__ == "__main__":
    unittest.main()
