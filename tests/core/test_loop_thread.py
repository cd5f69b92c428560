import unittest
import asyncio
import threading

from panelsync.core.loop_thread import LoopThread
from panelsync.core.exceptions import CoreLoopNotRunningError


class TestLoopThread(unittest.TestCase):
    """Unit tests for the LoopThread."""

    def setUp(self):
        """Set up a new LoopThread instance for each test."""
        self.loop_thread = LoopThread(name="TestLoop")

    def tearDown(self):
        """Ensure the event loop is stopped after each test."""
        if self.loop_thread.is_running():
            self.loop_thread.stop()
            self.loop_thread.wait_for_stop(timeout=5.0)

    def test_initial_state(self):
        """The loop thread starts in a non-running state."""
        self.assertFalse(self.loop_thread.is_running())
        with self.assertRaises(CoreLoopNotRunningError):
            self.loop_thread.loop

    def test_ensure_running_and_is_running(self):
        """Starting the loop is idempotent."""
        self.loop_thread.ensure_running()
        self.assertTrue(self.loop_thread.is_running())

        self.loop_thread.ensure_running()
        self.assertTrue(self.loop_thread.is_running())

    def test_loop_property(self):
        self.loop_thread.ensure_running()
        loop = self.loop_thread.loop
        self.assertIsInstance(loop, asyncio.AbstractEventLoop)
        self.assertTrue(loop.is_running())

    def test_stop_and_wait_for_stop(self):
        """Stopping the loop ends its thread and closes the loop."""
        self.loop_thread.ensure_running()
        loop = self.loop_thread.loop

        self.loop_thread.stop()
        self.loop_thread.wait_for_stop(timeout=5.0)

        self.assertFalse(self.loop_thread.is_running())
        self.assertTrue(loop.is_closed())

    def test_restart_after_stop(self):
        self.loop_thread.ensure_running()
        self.loop_thread.stop()
        self.loop_thread.wait_for_stop(timeout=5.0)

        self.loop_thread.ensure_running()
        self.assertTrue(self.loop_thread.is_running())

    def test_run_blocks_for_result(self):
        self.loop_thread.ensure_running()

        async def compute():
            await asyncio.sleep(0.01)
            return threading.get_ident()

        loop_tid = self.loop_thread.run(compute(), timeout=2.0)
        self.assertNotEqual(loop_tid, threading.get_ident())

    def test_pending_tasks_are_cancelled_on_stop(self):
        self.loop_thread.ensure_running()
        cancelled = threading.Event()

        async def forever():
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async def start_in_background():
            asyncio.get_running_loop().create_task(forever())
            await asyncio.sleep(0)

        self.loop_thread.run(start_in_background(), timeout=2.0)
        self.loop_thread.stop()
        self.loop_thread.wait_for_stop(timeout=5.0)

        self.assertTrue(cancelled.is_set())

    def test_run_before_start_raises(self):
        async def never():
            return None

        coro = never()
        with self.assertRaises(CoreLoopNotRunningError):
            self.loop_thread.run(coro)
        coro.close()

    def test_run_propagates_exceptions(self):
        self.loop_thread.ensure_running()

        async def failing_coro():
            await asyncio.sleep(0.01)
            raise ValueError("Task failed as expected")

        with self.assertRaises(ValueError) as cm:
            self.loop_thread.run(failing_coro(), timeout=2.0)
        self.assertEqual(str(cm.exception), "Task failed as expected")


if __name__ == '__main__':
    unittest.main()
