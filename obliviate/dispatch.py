import concurrent.futures
import logging
import queue
import typing

import attr

log = logging.getLogger(__name__)


@attr.s(frozen=True)
class Event:
    name: str = attr.ib()
    result: typing.Any = attr.ib(default=None)
    error: typing.Optional[BaseException] = attr.ib(default=None)
    task: bool = attr.ib(default=False)

    @property
    def ok(self) -> bool:
        return self.error is None


@attr.s
class Dispatcher:
    """
    Runs blocking work on a pool of threads.

    The outcome of each task is delivered as an Event on a queue, which the
    interactive loop drains between prompts. Started tasks are never
    cancelled.
    """

    workers: int = attr.ib(default=2)
    events: 'queue.Queue[Event]' = attr.ib(factory=queue.Queue, init=False, repr=False)
    _pool: concurrent.futures.ThreadPoolExecutor = attr.ib(init=False, repr=False)
    _pending: int = attr.ib(default=0, init=False)

    @_pool.default
    def _create_pool(self):
        return concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix='obliviate')

    @property
    def busy(self) -> bool:
        return self._pending > 0

    def submit(
            self,
            name: str,
            task: typing.Callable[..., typing.Any],
            *args: typing.Any) -> concurrent.futures.Future:
        log.debug(f"Submitting {name}")
        self._pending += 1
        future = self._pool.submit(task, *args)
        future.add_done_callback(lambda f: self.done(name, f))
        return future

    def done(self, name: str, future: concurrent.futures.Future) -> None:
        error = future.exception()
        if error is not None:
            log.debug(f"{name} failed: {error}")
            self.post(Event(name, error=error, task=True))
        else:
            self.post(Event(name, result=future.result(), task=True))

    def post(self, event: Event) -> None:
        self.events.put(event)

    def poll(self, timeout: typing.Optional[float] = None) -> typing.Optional[Event]:
        """Take the next event, waiting up to timeout seconds for one."""
        try:
            event = self.events.get(timeout=timeout) if timeout else self.events.get_nowait()
        except queue.Empty:
            return None
        if event.task:
            self._pending = max(0, self._pending - 1)
        return event

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)
