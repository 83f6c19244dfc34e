import pytest

from obliviate.dispatch import Dispatcher, Event


@pytest.fixture()
def dispatcher():
    dispatcher = Dispatcher()
    yield dispatcher
    dispatcher.shutdown()


def test_result_event(dispatcher):
    future = dispatcher.submit('add', lambda a, b: a + b, 1, 2)
    assert future.result(timeout=5) == 3
    assert dispatcher.busy

    event = dispatcher.poll(timeout=5)
    assert event == Event('add', result=3, task=True)
    assert event.ok
    assert not dispatcher.busy


def test_error_event(dispatcher):
    def fail():
        raise ValueError("nope")

    dispatcher.submit('fail', fail)
    event = dispatcher.poll(timeout=5)
    assert event.name == 'fail'
    assert not event.ok
    assert isinstance(event.error, ValueError)
    assert not dispatcher.busy


def test_posted_events_do_not_finish_tasks(dispatcher):
    dispatcher._pending = 1
    dispatcher.post(Event('expired'))
    assert dispatcher.poll() == Event('expired')
    assert dispatcher.busy


def test_poll_empty(dispatcher):
    assert dispatcher.poll() is None
    assert dispatcher.poll(timeout=0.01) is None
