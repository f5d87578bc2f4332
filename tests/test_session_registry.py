"""
Tests for sessions, conversation history and the idle-timeout registry.
Run: python3 -m unittest tests.test_session_registry -v
"""

import asyncio
import unittest
from unittest.mock import MagicMock

from core.events import SESSION_CREATED, SESSION_DESTROYED, OperatorEvents
from core.session import ASSISTANT, USER, Message, Session, SessionRegistry
from tests.fakes import FakeClock

THIRTY_MINUTES = 30 * 60


class TestMessagesAndSession(unittest.TestCase):

    def test_unknown_role_rejected(self):
        with self.assertRaises(ValueError):
            Message(role="system", content="hi")

    def test_history_is_chronological(self):
        session = Session(id="s1", provider_config=None)
        session.append_message(USER, "hello")
        session.append_message(ASSISTANT, "hi there")
        session.append_message(USER, "how are you")
        self.assertEqual(session.ordered_messages(), [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
            {"role": "user", "content": "how are you"},
        ])

    def test_message_ids_unique(self):
        a = Message(role=USER, content="x")
        b = Message(role=USER, content="x")
        self.assertNotEqual(a.id, b.id)

    def test_summary(self):
        session = Session(id="s1", provider_config=None, created_at=0.0, last_activity=60.0)
        session.append_message(USER, "hello")
        summary = session.summary()
        self.assertEqual(summary["id"], "s1")
        self.assertEqual(summary["message_count"], 1)
        self.assertTrue(summary["created_at"].startswith("1970-01-01T00:00:00"))
        self.assertTrue(summary["last_activity"].startswith("1970-01-01T00:01:00"))

    def test_message_dict_includes_audio_reference_when_set(self):
        plain = Message(role=USER, content="x").to_dict()
        self.assertNotIn("audio_reference", plain)
        ref = Message(role=ASSISTANT, content="y", audio_reference="tts-1").to_dict()
        self.assertEqual(ref["audio_reference"], "tts-1")


class TestSessionRegistry(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock(start=10_000.0)
        self.events = OperatorEvents()
        self.published = []
        self.events.subscribe(lambda name, data: self.published.append((name, data)))
        self.registry = SessionRegistry(
            provider_config="cfg", idle_timeout_seconds=THIRTY_MINUTES, clock=self.clock, events=self.events
        )

    def test_get_or_create_creates_once(self):
        first = self.registry.get_or_create("s1")
        self.clock.advance(5)
        second = self.registry.get_or_create("s1")
        self.assertIs(first, second)
        self.assertEqual(len(self.registry), 1)
        self.assertEqual(second.last_activity, self.clock.now)
        self.assertEqual(second.provider_config, "cfg")
        self.assertEqual(second.conversation_history, [])
        self.assertEqual([p[0] for p in self.published], [SESSION_CREATED])

    def test_get_or_create_generates_id(self):
        session = self.registry.get_or_create()
        self.assertTrue(session.id)
        self.assertIn(session.id, self.registry)

    def test_touch(self):
        self.registry.get_or_create("s1")
        self.clock.advance(30)
        self.assertTrue(self.registry.touch("s1"))
        self.assertEqual(self.registry.get("s1").last_activity, self.clock.now)
        self.assertFalse(self.registry.touch("missing"))

    def test_destroy_closes_state_and_notifies_first(self):
        self.registry.get_or_create("s1")
        state = MagicMock()
        self.registry.attach_state("s1", state)
        seen = []

        def listener(session_id, reason):
            seen.append((session_id, reason, session_id in self.registry))
            state.close.assert_not_called()

        self.registry.add_destroy_listener(listener)
        self.assertTrue(self.registry.destroy("s1"))
        self.assertEqual(seen, [("s1", "destroyed", True)])
        state.close.assert_called_once_with()
        self.assertIsNone(self.registry.get("s1"))
        self.assertIsNone(self.registry.get_state("s1"))
        self.assertEqual(self.published[-1], (SESSION_DESTROYED, {"session_id": "s1", "reason": "destroyed"}))
        self.assertFalse(self.registry.destroy("s1"))

    def test_failing_listener_does_not_block_destroy(self):
        self.registry.get_or_create("s1")
        self.registry.add_destroy_listener(MagicMock(side_effect=RuntimeError("boom")))
        self.assertTrue(self.registry.destroy("s1"))
        self.assertNotIn("s1", self.registry)

    def test_attach_state_replaces_and_closes_previous(self):
        self.registry.get_or_create("s1")
        old, new = MagicMock(), MagicMock()
        self.registry.attach_state("s1", old)
        self.registry.attach_state("s1", new)
        old.close.assert_called_once_with()
        self.assertIs(self.registry.get_state("s1"), new)
        with self.assertRaises(KeyError):
            self.registry.attach_state("missing", MagicMock())

    def test_sweep_destroys_exactly_expired(self):
        states = {}
        for sid in ("a", "b", "c"):
            self.registry.get_or_create(sid)
            states[sid] = MagicMock()
            self.registry.attach_state(sid, states[sid])
        self.clock.advance(THIRTY_MINUTES - 10)
        self.registry.touch("b")
        self.clock.advance(20)
        reasons = []
        self.registry.add_destroy_listener(lambda sid, reason: reasons.append((sid, reason)))

        destroyed = self.registry.sweep()
        self.assertEqual(sorted(destroyed), ["a", "c"])
        self.assertEqual(sorted(reasons), [("a", "timeout"), ("c", "timeout")])
        self.assertIn("b", self.registry)
        states["a"].close.assert_called_once_with()
        states["c"].close.assert_called_once_with()
        states["b"].close.assert_not_called()

    def test_session_at_exact_timeout_survives(self):
        self.registry.get_or_create("s1")
        self.clock.advance(THIRTY_MINUTES)
        self.assertEqual(self.registry.sweep(), [])
        self.clock.advance(1)
        self.assertEqual(self.registry.sweep(), ["s1"])

    def test_close_closes_states_keeps_sessions(self):
        self.registry.get_or_create("s1")
        state = MagicMock()
        self.registry.attach_state("s1", state)
        self.registry.close()
        state.close.assert_called_once_with()
        self.assertIn("s1", self.registry)
        self.assertEqual(self.registry.states(), [])


class TestSweeper(unittest.IsolatedAsyncioTestCase):

    async def test_background_sweep_runs_periodically(self):
        clock = FakeClock()
        registry = SessionRegistry(None, idle_timeout_seconds=1, sweep_interval_seconds=0.01, clock=clock)
        registry.get_or_create("s1")
        clock.advance(5)
        registry.start_sweeper()
        for _ in range(100):
            if "s1" not in registry:
                break
            await asyncio.sleep(0.01)
        await registry.stop_sweeper()
        self.assertNotIn("s1", registry)

    async def test_stop_sweeper_without_start(self):
        registry = SessionRegistry(None)
        await registry.stop_sweeper()


if __name__ == "__main__":
    unittest.main()
