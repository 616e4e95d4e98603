"""
Asynchronous delivery of ChatService notifications.

ChatService posts notifications while holding its state lock. Running
collaborator code there would let a slow or re-entrant callback stall (or
deadlock) every worker, so posts only enqueue and a single daemon thread
delivers them. One thread means the collaborator sees notifications in the
order they were posted.
"""

import threading
from collections import deque

import RNS


class NotificationDispatcher:
    """
    FIFO of (callback, args) run on a dedicated thread.

    post() never blocks. The delivery thread is started on first post and
    lives until stop().
    """

    def __init__(self, name="ChatService"):
        self.name = name
        self._queue = deque()
        self._cond = threading.Condition()
        self._pending = 0
        self._running = True
        self._thread = None

    def post(self, callback, *args):
        """Queue callback(*args). Ignored if callback is None or after stop()."""
        if callback is None:
            return

        with self._cond:
            if not self._running:
                return
            self._queue.append((callback, args))
            self._pending += 1
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, daemon=True, name=f"{self.name}-Notify")
                self._thread.start()
            self._cond.notify_all()

    def drain(self, timeout=None):
        """
        Wait until every posted notification has been delivered.

        Must not be called from inside a callback.

        Returns:
            bool: False if the timeout expired first
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout)

    def stop(self, timeout=2.0):
        """Deliver what is queued, then stop the delivery thread."""
        with self._cond:
            self._running = False
            self._cond.notify_all()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self):
        while True:
            with self._cond:
                while not self._queue and self._running:
                    self._cond.wait()
                if not self._queue:
                    return
                callback, args = self._queue.popleft()

            try:
                callback(*args)
            except Exception as e:
                RNS.log(f"{self} callback {getattr(callback, '__name__', callback)} raised {type(e).__name__}: {e}", RNS.LOG_ERROR)
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()

    def __str__(self):
        return f"NotificationDispatcher[{self.name}]"
