import unittest

from support import RecordingExecutor, build_core, make_config

from toolgate.daemon.control import EffectError, ErrorCode, Identity
from toolgate.daemon.gateway import Gateway

USER = Identity(id="user-1")
FREE_USER = Identity(id="user-free", plan="free")


class GatewayTestCase(unittest.TestCase):
    def setUp(self):
        self.core = build_core()
        self.gateway = Gateway(self.core.admission, self.core.manager, config=lambda: self.core.config)
        self.executor = RecordingExecutor()
        self.gateway.register_action(
            "apply_tool",
            self.executor,
            description="Apply a tool to a publication.",
            commit_hint="Confirm to apply.",
        )
        self.tagged = []
        self.gateway.register_tool("bulk_tag", self._bulk_tag)
        self.gateway.register_tool("create_publication", lambda identity, args: {"id": "pub-1"})

    def _bulk_tag(self, identity, args):
        self.tagged.extend(args["items"])
        return {"tagged": len(args["items"])}


class EnvelopeTests(GatewayTestCase):
    def test_success_envelope(self):
        response = self.gateway.call_tool(USER, "ping")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.success)
        self.assertRegex(response.body["request_id"], r"^req_\d{8}_\d{6}_[0-9a-f]{8}$")
        self.assertRegex(response.body["timestamp"], r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")
        names = [t["name"] for t in response.body["data"]["tools"]]
        self.assertIn("apply_tool", names)
        self.assertIn("get_usage", names)

    def test_unknown_tool_suggests_similar(self):
        response = self.gateway.call_tool(USER, "bulk_tags")

        self.assertEqual(response.status_code, 404)
        error = response.body["error"]
        self.assertEqual(error["code"], "unknown_tool")
        self.assertIn("bulk_tag", error["suggestion"])
        self.assertEqual(error["details"]["requested_tool"], "bulk_tags")

    def test_handler_effect_error(self):
        def fail(identity, args):
            raise EffectError("title is required", code=ErrorCode.VALIDATION_FAILED)

        self.gateway.register_tool("edit_publication", fail)
        response = self.gateway.call_tool(USER, "edit_publication", {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.body["error"]["message"], "title is required")

    def test_handler_crash_is_internal_error(self):
        def crash(identity, args):
            raise RuntimeError("db gone")

        self.gateway.register_tool("manage_team", crash)
        with self.assertLogs("toolgate.daemon.gateway", level="ERROR"):
            response = self.gateway.call_tool(USER, "manage_team", {})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.body["error"]["code"], "internal_error")

    def test_audit_line(self):
        with self.assertLogs("toolgate.tool.audit", level="INFO") as logs:
            self.gateway.call_tool(USER, "ping")

        record = logs.records[0]
        self.assertEqual(record.extra_fields["tool"], "ping")
        self.assertEqual(record.extra_fields["result"], "success")
        self.assertEqual(record.extra_fields["identity"], "user-1")

    def test_duplicate_tool_rejected(self):
        with self.assertRaises(ValueError):
            self.gateway.register_tool("ping", lambda identity, args: {})


class AdmissionRoutingTests(GatewayTestCase):
    def test_write_tool_counts_as_write(self):
        self.gateway.call_tool(USER, "create_publication", {"title": "x"})

        write_key = self.core.keys.counter("sustained", "write", USER.id)
        self.assertEqual(self.core.counters.get(write_key), 1)

    def test_rate_limited_response(self):
        for _ in range(5):
            self.gateway.call_tool(USER, "create_publication")

        response = self.gateway.call_tool(USER, "create_publication")

        self.assertEqual(response.status_code, 429)
        error = response.body["error"]
        self.assertEqual(error["code"], "admission_denied")
        self.assertEqual(error["reason"], "burst_limit_exceeded")
        self.assertEqual(error["retry_after"], 5)

    def test_bulk_not_allowed_on_free_plan(self):
        response = self.gateway.call_tool(FREE_USER, "bulk_tag", {"items": ["a"]})

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.body["error"]["reason"], "bulk_not_allowed_for_plan")
        self.assertEqual(self.tagged, [])

    def test_bulk_item_count_from_items(self):
        response = self.gateway.call_tool(USER, "bulk_tag", {"items": list(range(11))})
        self.assertEqual(response.body["error"]["reason"], "bulk_item_limit_exceeded")

        response = self.gateway.call_tool(USER, "bulk_tag", {"items": ["a", "b"]})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.body["data"], {"tagged": 2, "item_delay_ms": 500})

    def test_bulk_requires_items(self):
        response = self.gateway.call_tool(USER, "bulk_tag", {})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.body["error"]["code"], "validation_failed")

    def test_usage_tool(self):
        self.gateway.call_tool(USER, "ping")
        response = self.gateway.call_tool(USER, "get_usage")

        self.assertEqual(response.body["data"]["plan"], "pro")
        self.assertEqual(response.body["data"]["per_class_usage"]["read"]["current"], 2)


class TwoPhaseTests(GatewayTestCase):
    def _prepare(self, identity=USER):
        response = self.gateway.call_tool(
            identity,
            "apply_tool",
            {"stage": "prepare", "resource_type": "publication", "resource_id": 7, "tool": "summarize"},
        )
        self.assertEqual(response.status_code, 200, response.body)
        return response.body["data"]

    def test_prepare_returns_next_action(self):
        data = self._prepare()

        self.assertTrue(data["session_id"].startswith("as_"))
        self.assertEqual(data["expires_in"], 300)
        self.assertEqual(data["preview"]["target"]["resource_id"], "7")
        self.assertEqual(data["preview"]["inputs"]["tool"], "summarize")
        self.assertEqual(
            data["next_action"],
            {
                "tool": "apply_tool",
                "args": {"stage": "commit", "session_id": data["session_id"]},
                "hint": "Confirm to apply.",
            },
        )

    def test_commit_then_replay(self):
        token = self._prepare()["session_id"]

        first = self.gateway.call_tool(USER, "apply_tool", {"stage": "commit", "session_id": token, "confirm": True})
        second = self.gateway.call_tool(USER, "apply_tool", {"stage": "commit", "session_id": token})

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.body["data"]["resource"], {"resource_type": "publication", "resource_id": "res-1"})
        self.assertEqual(self.executor.calls[0][1], {"confirm": True})
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.body["error"]["code"], "session_expired")

    def test_foreign_commit_indistinguishable_from_expiry(self):
        token = self._prepare()["session_id"]

        stolen = self.gateway.call_tool(Identity(id="mallory"), "apply_tool", {"stage": "commit", "session_id": token})
        bogus = self.gateway.call_tool(USER, "apply_tool", {"stage": "commit", "session_id": "as_" + "f" * 32})

        self.assertEqual(stolen.status_code, bogus.status_code)
        self.assertEqual(stolen.body["error"], bogus.body["error"])

    def test_discard_stage(self):
        token = self._prepare()["session_id"]

        response = self.gateway.call_tool(USER, "apply_tool", {"stage": "discard", "session_id": token})

        self.assertEqual(response.body["data"], {"discarded": True})
        self.assertEqual(self.core.manager.list_sessions(), [])

    def test_invalid_stage(self):
        response = self.gateway.call_tool(USER, "apply_tool", {"stage": "publish"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.body["error"]["details"], {"stage": "publish"})

    def test_prepare_leg_is_read_commit_leg_is_write(self):
        token = self._prepare()["session_id"]
        self.gateway.call_tool(USER, "apply_tool", {"stage": "commit", "session_id": token})

        get = self.core.counters.get
        self.assertEqual(get(self.core.keys.counter("sustained", "read", USER.id)), 1)
        self.assertEqual(get(self.core.keys.counter("sustained", "write", USER.id)), 1)

    def test_prepare_class_follows_reloaded_catalog(self):
        self._prepare()

        tools = make_config().model_dump()["tools"]
        tools["staged_tools"].remove("apply_tool")
        tools["bulk_tools"].append("apply_tool")
        self.core.config = make_config(tools=tools)
        self._prepare()

        get = self.core.counters.get
        self.assertEqual(get(self.core.keys.counter("sustained", "read", USER.id)), 1)
        self.assertEqual(get(self.core.keys.counter("bulk", "bulk", USER.id)), 1)


if __name__ == "__main__":
    unittest.main()
