import re
import threading
import unittest
from unittest.mock import MagicMock

from support import RecordingExecutor, T0, build_core

from toolgate.daemon.control import (
    ActionSpec,
    CommitResult,
    EffectError,
    ErrorCode,
    Identity,
    PrepareResult,
    ResourceRef,
    TargetDescriptor,
    ToolError,
)
from toolgate.daemon.control.errors import SESSION_GONE_MESSAGE
from toolgate.daemon.stores import SessionStore, StoreUnavailableError

OWNER = Identity(id="owner-1")
INTRUDER = Identity(id="intruder-2")
TARGET = TargetDescriptor(
    action="rate_publication",
    resource_type="publication",
    resource_id="42",
    attributes={"title": "Weekly digest"},
    internal={"author_secret": "x"},
)
INPUTS = {"overall_rating": 4, "comment": "solid"}


class SessionTestCase(unittest.TestCase):
    def setUp(self):
        self.core = build_core()
        self.executor = RecordingExecutor()
        self.core.manager.register(ActionSpec(name="rate_publication", executor=self.executor))

    def prepare(self, identity=OWNER, inputs=None) -> PrepareResult:
        result = self.core.manager.prepare(identity, TARGET, INPUTS if inputs is None else inputs)
        self.assertIsInstance(result, PrepareResult)
        return result


class PrepareTests(SessionTestCase):
    def test_token_format_and_countdown(self):
        result = self.prepare()
        self.assertRegex(result.token, r"^as_[0-9a-f]{32}$")
        self.assertEqual(result.expires_in_seconds, 300)

    def test_preview_hides_internal_fields(self):
        result = self.prepare()
        self.assertEqual(result.preview["target"]["resource_id"], "42")
        self.assertNotIn("internal", result.preview["target"])
        self.assertNotIn("author_secret", repr(result.preview))
        self.assertEqual(result.preview["inputs"], INPUTS)

    def test_identical_prepares_give_independent_sessions(self):
        first = self.prepare()
        second = self.prepare()
        self.assertNotEqual(first.token, second.token)

        self.assertIsInstance(self.core.manager.commit(OWNER, first.token, {}), CommitResult)
        self.assertIsInstance(self.core.manager.commit(OWNER, second.token, {}), CommitResult)
        self.assertEqual(len(self.executor.calls), 2)

    def test_identical_inputs_share_digest(self):
        self.prepare()
        self.prepare(inputs={"comment": "solid", "overall_rating": 4})
        digests = {s["inputs_digest"] for s in self.core.manager.list_sessions()}
        self.assertEqual(len(digests), 1)

    def test_unknown_action(self):
        target = TargetDescriptor(action="launch_rocket", resource_type="rocket")
        result = self.core.manager.prepare(OWNER, target, {})
        self.assertEqual(result.code, ErrorCode.VALIDATION_FAILED)

    def test_permission_denied(self):
        self.core.permissions.revoked.add(OWNER.id)
        result = self.core.manager.prepare(OWNER, TARGET, INPUTS)
        self.assertEqual(result.code, ErrorCode.VALIDATION_FAILED)
        self.assertEqual(list(self.core.manager.list_sessions()), [])

    def test_prepare_is_admitted_as_read(self):
        self.prepare()
        read_key = self.core.keys.counter("sustained", "read", OWNER.id)
        write_key = self.core.keys.counter("sustained", "write", OWNER.id)
        self.assertEqual(self.core.counters.get(read_key), 1)
        self.assertEqual(self.core.counters.get(write_key), 0)

    def test_token_collision_regenerates(self):
        tokens = iter(["as_same", "as_same", "as_fresh"])
        self.core.manager._new_token = lambda: next(tokens)

        self.assertEqual(self.prepare().token, "as_same")
        self.assertEqual(self.prepare().token, "as_fresh")

    def test_persistent_collision_is_internal_error(self):
        self.core.manager._new_token = lambda: "as_stuck"
        self.prepare()
        result = self.core.manager.prepare(OWNER, TARGET, INPUTS)
        self.assertEqual(result.code, ErrorCode.INTERNAL_ERROR)

    def test_context_loader_crash_is_internal_error(self):
        def load_context(identity, target):
            raise RuntimeError("catalog offline")

        self.core.manager.register(ActionSpec(name="publish_digest", executor=self.executor, context=load_context))
        target = TargetDescriptor(action="publish_digest", resource_type="publication", resource_id="7")

        result = self.core.manager.prepare(OWNER, target, {})

        self.assertIsInstance(result, ToolError)
        self.assertEqual(result.code, ErrorCode.INTERNAL_ERROR)
        self.assertNotIn("catalog offline", result.message)
        self.assertEqual(self.core.manager.list_sessions(), [])

    def test_preview_effect_error_keeps_its_code(self):
        def preview(target, inputs, context):
            raise EffectError("publication is archived", code=ErrorCode.VALIDATION_FAILED)

        self.core.manager.register(ActionSpec(name="publish_digest", executor=self.executor, preview=preview))
        target = TargetDescriptor(action="publish_digest", resource_type="publication", resource_id="7")

        result = self.core.manager.prepare(OWNER, target, {})

        self.assertEqual(result.code, ErrorCode.VALIDATION_FAILED)
        self.assertEqual(result.message, "publication is archived")

    def test_duplicate_registration_rejected(self):
        with self.assertRaises(ValueError):
            self.core.manager.register(ActionSpec(name="rate_publication", executor=self.executor))


class CommitTests(SessionTestCase):
    def test_commit_applies_once(self):
        token = self.prepare().token
        result = self.core.manager.commit(OWNER, token, {"confirm": True})

        self.assertIsInstance(result, CommitResult)
        self.assertEqual(result.resource_ref.resource_id, "res-1")
        target, params, session = self.executor.calls[0]
        self.assertEqual(target.internal["author_secret"], "x")
        self.assertEqual(params, {"confirm": True})
        self.assertEqual(session.token, token)
        self.assertEqual(dict(session.inputs), INPUTS)

    def test_second_commit_is_session_expired(self):
        token = self.prepare().token
        self.core.manager.commit(OWNER, token, {})

        result = self.core.manager.commit(OWNER, token, {})

        self.assertIsInstance(result, ToolError)
        self.assertEqual(result.code, ErrorCode.SESSION_EXPIRED)
        self.assertEqual(len(self.executor.calls), 1)

    def test_commit_after_ttl_is_session_expired(self):
        token = self.prepare().token
        self.core.clock.now = T0 + 301

        result = self.core.manager.commit(OWNER, token, {})

        self.assertEqual(result.code, ErrorCode.SESSION_EXPIRED)
        self.assertEqual(self.executor.calls, [])

    def test_commit_just_before_ttl_succeeds(self):
        token = self.prepare().token
        self.core.clock.now = T0 + 299
        self.assertIsInstance(self.core.manager.commit(OWNER, token, {}), CommitResult)

    def test_unknown_token(self):
        result = self.core.manager.commit(OWNER, "as_" + "0" * 32, {})
        self.assertEqual(result.code, ErrorCode.SESSION_EXPIRED)
        self.assertEqual(self.core.manager.commit(OWNER, "", {}).code, ErrorCode.SESSION_EXPIRED)

    def test_owner_mismatch_looks_like_expiry(self):
        token = self.prepare().token

        result = self.core.manager.commit(INTRUDER, token, {})

        self.assertEqual(result.code, ErrorCode.SESSION_OWNER_MISMATCH)
        self.assertEqual(result.to_dict()["code"], "session_expired")
        self.assertEqual(result.message, SESSION_GONE_MESSAGE)
        # The owner's session is untouched.
        self.assertIsInstance(self.core.manager.commit(OWNER, token, {}), CommitResult)

    def test_permission_revoked_before_commit(self):
        token = self.prepare().token
        self.core.permissions.revoked.add(OWNER.id)

        result = self.core.manager.commit(OWNER, token, {})

        self.assertEqual(result.code, ErrorCode.VALIDATION_FAILED)
        self.assertEqual(self.executor.calls, [])
        self.core.permissions.revoked.clear()
        self.assertIsInstance(self.core.manager.commit(OWNER, token, {}), CommitResult)

    def test_commit_admission_denied_keeps_session(self):
        token = self.prepare().token
        for _ in range(5):
            self.core.admission.check(OWNER, "write")

        result = self.core.manager.commit(OWNER, token, {})
        self.assertEqual(result.code, ErrorCode.ADMISSION_DENIED)
        self.assertEqual(result.reason, "burst_limit_exceeded")

        self.core.clock.advance(5)
        self.assertIsInstance(self.core.manager.commit(OWNER, token, {}), CommitResult)

    def test_executor_failure_consumes_session(self):
        self.executor.error = EffectError("publication locked", code=ErrorCode.VALIDATION_FAILED)
        token = self.prepare().token

        result = self.core.manager.commit(OWNER, token, {})

        self.assertEqual(result.code, ErrorCode.VALIDATION_FAILED)
        self.assertEqual(result.message, "publication locked")
        self.assertEqual(self.core.manager.commit(OWNER, token, {}).code, ErrorCode.SESSION_EXPIRED)

    def test_executor_crash_is_internal_error(self):
        self.executor.error = RuntimeError("boom")
        token = self.prepare().token

        with self.assertLogs("toolgate.daemon.control.sessions", level="ERROR"):
            result = self.core.manager.commit(OWNER, token, {})

        self.assertEqual(result.code, ErrorCode.INTERNAL_ERROR)

    def test_callable_executor(self):
        calls = []

        def apply(target, params, *, session):
            calls.append(session.token)
            return ResourceRef(resource_type="comment", resource_id="c-1", url="https://example.test/c/1")

        self.core.manager.register(ActionSpec(name="add_comment", executor=apply))
        target = TargetDescriptor(action="add_comment", resource_type="comment")
        token = self.core.manager.prepare(OWNER, target, {"body": "hi"}).token

        result = self.core.manager.commit(OWNER, token, {})

        self.assertEqual(result.resource_ref.to_dict()["url"], "https://example.test/c/1")
        self.assertEqual(calls, [token])


class ConcurrentCommitTests(SessionTestCase):
    def test_exactly_one_concurrent_commit_wins(self):
        token = self.prepare().token
        workers = 5
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def commit():
            barrier.wait()
            outcome = self.core.manager.commit(OWNER, token, {})
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=commit) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        wins = [r for r in results if isinstance(r, CommitResult)]
        losses = [r for r in results if isinstance(r, ToolError)]
        self.assertEqual(len(wins), 1)
        self.assertEqual(len(self.executor.calls), 1)
        # Losers either lost the delete or were throttled by the write burst.
        self.assertTrue(all(r.code in {ErrorCode.SESSION_EXPIRED, ErrorCode.ADMISSION_DENIED} for r in losses))


class DiscardAndAuditTests(SessionTestCase):
    def test_discard_then_commit(self):
        token = self.prepare().token
        self.assertTrue(self.core.manager.discard(OWNER, token))
        self.assertEqual(self.core.manager.commit(OWNER, token, {}).code, ErrorCode.SESSION_EXPIRED)

    def test_discard_by_non_owner(self):
        token = self.prepare().token
        self.assertEqual(self.core.manager.discard(INTRUDER, token).code, ErrorCode.SESSION_OWNER_MISMATCH)

    def test_list_sessions_never_exposes_tokens(self):
        token = self.prepare().token
        self.prepare(identity=Identity(id="someone-else"))

        listed = self.core.manager.list_sessions()
        mine = self.core.manager.list_sessions(owner_identity_id=OWNER.id)

        self.assertEqual(len(listed), 2)
        self.assertEqual(len(mine), 1)
        self.assertNotIn(token, repr(listed))
        self.assertTrue(re.fullmatch(r"[0-9a-f]{12}", mine[0]["session"]))
        self.assertEqual(mine[0]["expires_in_seconds"], 300)

    def test_expired_sessions_disappear_from_audit(self):
        self.prepare()
        self.core.clock.advance(300)
        self.assertEqual(self.core.manager.list_sessions(), [])


class SessionStoreFailureTests(unittest.TestCase):
    def test_lookup_failure_is_loud(self):
        core = build_core()
        store = MagicMock(spec=SessionStore)
        store.get.side_effect = StoreUnavailableError("timeout")
        core.manager._store = store
        core.manager.register(ActionSpec(name="rate_publication", executor=RecordingExecutor()))

        result = core.manager.commit(OWNER, "as_" + "1" * 32, {})

        self.assertEqual(result.code, ErrorCode.INTERNAL_ERROR)
        self.assertNotEqual(result.code, ErrorCode.SESSION_EXPIRED)

    def test_create_failure(self):
        core = build_core()
        store = MagicMock(spec=SessionStore)
        store.create_if_absent.side_effect = StoreUnavailableError("timeout")
        core.manager._store = store
        core.manager.register(ActionSpec(name="rate_publication", executor=RecordingExecutor()))

        result = core.manager.prepare(OWNER, TARGET, INPUTS)

        self.assertEqual(result.code, ErrorCode.INTERNAL_ERROR)


if __name__ == "__main__":
    unittest.main()
