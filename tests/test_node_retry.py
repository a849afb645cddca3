import unittest
import asyncio
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent))
from actionflow import Node, AsyncNode, SharedContext, Aborted


class FailingNode(Node):
    def __init__(self, fail_count, **kwargs):
        super().__init__(**kwargs)
        self.fail_count = fail_count
        self.attempt_count = 0
        self.fallback_calls = []

    def exec(self, prep_res):
        self.attempt_count += 1
        if self.attempt_count <= self.fail_count:
            raise ValueError(f"failure {self.attempt_count}")
        return "success"

    def exec_fallback(self, prep_res, exc):
        self.fallback_calls.append(exc)
        return "fallback"

    def post(self, shared, prep_res, exec_res):
        shared.data['result'] = exec_res
        return exec_res


class NoFallbackNode(Node):
    def exec(self, prep_res):
        raise KeyError("missing")


class BrokenFallbackNode(Node):
    def exec(self, prep_res):
        raise ValueError("exec failed")

    def exec_fallback(self, prep_res, exc):
        raise RuntimeError("fallback failed")


class AsyncFailingNode(AsyncNode):
    def __init__(self, fail_count, **kwargs):
        super().__init__(**kwargs)
        self.fail_count = fail_count
        self.attempt_count = 0
        self.fallback_calls = []

    async def exec_async(self, prep_res):
        self.attempt_count += 1
        if self.attempt_count <= self.fail_count:
            raise ValueError(f"async failure {self.attempt_count}")
        return "success"

    async def exec_fallback_async(self, prep_res, exc):
        self.fallback_calls.append(exc)
        return "fallback"


class TestRetry(unittest.TestCase):
    def test_succeeds_after_failures_without_fallback(self):
        """k-1 failures followed by a success return the success result"""
        node = FailingNode(fail_count=2, max_retries=3)
        shared = SharedContext()
        action = node.run(shared)
        self.assertEqual(action, "success")
        self.assertEqual(node.attempt_count, 3)
        self.assertEqual(node.fallback_calls, [])
        self.assertEqual(shared.data['result'], "success")

    def test_fallback_called_once_with_last_error(self):
        node = FailingNode(fail_count=10, max_retries=3)
        shared = SharedContext()
        node.run(shared)
        self.assertEqual(node.attempt_count, 3)
        self.assertEqual(len(node.fallback_calls), 1)
        self.assertEqual(str(node.fallback_calls[0]), "failure 3")
        self.assertEqual(shared.data['result'], "fallback")

    def test_success_short_circuits(self):
        node = FailingNode(fail_count=0, max_retries=5)
        node.run(SharedContext())
        self.assertEqual(node.attempt_count, 1)

    def test_default_fallback_reraises(self):
        node = NoFallbackNode(max_retries=2)
        with self.assertRaises(KeyError):
            node.run(SharedContext())

    def test_fallback_failure_propagates_unmodified(self):
        node = BrokenFallbackNode(max_retries=2)
        with self.assertRaises(RuntimeError) as cm:
            node.run(SharedContext())
        self.assertEqual(str(cm.exception), "fallback failed")

    def test_retry_attempts_are_logged_at_debug(self):
        node = FailingNode(fail_count=1, max_retries=2)
        with self.assertLogs("actionflow.context", level="DEBUG") as logs:
            node.run(SharedContext())
        self.assertTrue(any("attempt 1/2 failed" in line for line in logs.output))


class AbortAwareNode(Node):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.attempts = 0
        self.fallback_calls = 0

    def exec(self, prep_res):
        self.attempts += 1
        self.shared.raise_if_aborted()
        return "ran"

    def exec_fallback(self, prep_res, exc):
        self.fallback_calls += 1
        return "fallback"


class TestAbortDuringRetry(unittest.TestCase):
    def test_aborted_is_not_retried(self):
        shared = SharedContext()
        shared.abort("stop")
        node = AbortAwareNode(max_retries=3, wait=0.5)
        with patch('time.sleep') as sleep:
            with self.assertRaises(Aborted):
                node.run(shared)
        self.assertEqual(node.attempts, 1)
        self.assertEqual(node.fallback_calls, 0)
        sleep.assert_not_called()

    def test_async_aborted_is_not_retried(self):
        attempts = []

        class AsyncAbortAware(AsyncNode):
            async def exec_async(self, prep_res):
                attempts.append(1)
                self.shared.raise_if_aborted()

        shared = SharedContext()
        shared.abort()
        with self.assertRaises(Aborted):
            asyncio.run(AsyncAbortAware(max_retries=3).run_async(shared))
        self.assertEqual(len(attempts), 1)


class TestRetryWait(unittest.TestCase):
    def test_wait_between_attempts(self):
        sleep_times = []
        with patch('time.sleep', side_effect=lambda t: sleep_times.append(t)):
            node = FailingNode(fail_count=10, max_retries=4, wait=0.5)
            node.run(SharedContext())
        # No wait after the final attempt
        self.assertEqual(sleep_times, [0.5, 0.5, 0.5])

    def test_no_sleep_when_wait_is_zero(self):
        sleep_times = []
        with patch('time.sleep', side_effect=lambda t: sleep_times.append(t)):
            node = FailingNode(fail_count=10, max_retries=3, wait=0)
            node.run(SharedContext())
        self.assertEqual(sleep_times, [])

    def test_async_wait_between_attempts(self):
        sleep_times = []

        async def fake_sleep(t):
            sleep_times.append(t)

        node = AsyncFailingNode(fail_count=2, max_retries=3, wait=0.25)
        with patch('asyncio.sleep', new=fake_sleep):
            action = asyncio.run(node.run_async(SharedContext()))
        self.assertIsNone(action)
        self.assertEqual(sleep_times, [0.25, 0.25])
        self.assertEqual(node.fallback_calls, [])


class TestAsyncRetry(unittest.TestCase):
    def test_async_fallback_after_exhausting_attempts(self):
        node = AsyncFailingNode(fail_count=5, max_retries=2)
        asyncio.run(node.run_async(SharedContext()))
        self.assertEqual(node.attempt_count, 2)
        self.assertEqual(len(node.fallback_calls), 1)
        self.assertEqual(str(node.fallback_calls[0]), "async failure 2")

    def test_async_default_fallback_reraises(self):
        class Boom(AsyncNode):
            async def exec_async(self, prep_res):
                raise ValueError("boom")

        with self.assertRaises(ValueError):
            asyncio.run(Boom(max_retries=3).run_async(SharedContext()))

    def test_async_node_cannot_run_synchronously(self):
        with self.assertRaises(RuntimeError):
            AsyncNode().run(SharedContext())


class TestNodeConfiguration(unittest.TestCase):
    def test_invalid_max_retries(self):
        with self.assertRaises(ValueError):
            Node(max_retries=0)

    def test_negative_wait(self):
        with self.assertRaises(ValueError):
            Node(wait=-1)

    def test_run_without_context_creates_one(self):
        class Writer(Node):
            def post(self, shared, prep_res, exec_res):
                shared.data['seen'] = True

        node = Writer()
        node.run()
        self.assertIsInstance(node.shared, SharedContext)
        self.assertTrue(node.shared.data['seen'])

    def test_run_wraps_plain_dict(self):
        class Counter(Node):
            def post(self, shared, prep_res, exec_res):
                shared.data['count'] += 1

        data = {'count': 0}
        Counter().run(data)
        self.assertEqual(data['count'], 1)

    def test_standalone_run_with_successors_warns(self):
        node = Node()
        node >> Node()
        shared = SharedContext()
        warnings_seen = []
        shared.logger.on("warning", lambda message, *args: warnings_seen.append(message))
        node.run(shared)
        self.assertEqual(warnings_seen, ["Node won't run successors. Use Flow."])


if __name__ == '__main__':
    unittest.main()
