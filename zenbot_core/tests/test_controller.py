import json
import queue
import threading
from contextlib import contextmanager

import pytest

from zenbot_core.domain.conversation import Conversation
from zenbot_core.domain.exceptions import ApiError, ProviderError, StreamStateError
from zenbot_core.domain.models import ChatMessage, ChatRequest
from zenbot_core.streaming.controller import StreamController, StreamState


def frame(channel, text):
    return "data: " + json.dumps({"c": channel, "d": text}) + "\n"


FIVE_FRAMES = [
    frame("reasoning", "r1"),
    frame("reasoning", "r2"),
    frame("response", "a1"),
    frame("response", "a2"),
    frame("response", "a3"),
]


class ListSource:
    """逐块返回预置数据的 ChunkSource，记录被读取的块数。"""

    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.reads = 0
        self.closed = False

    def iter_chunks(self):
        for chunk in self._chunks:
            if self.closed:
                return
            self.reads += 1
            yield chunk

    def close(self):
        self.closed = True


class BlockingSource:
    """由测试线程推送数据的 ChunkSource；close() 会让阻塞的读取立即结束。"""

    _CLOSED = object()

    def __init__(self):
        self._queue = queue.Queue()

    def push(self, chunk):
        self._queue.put(chunk)

    def iter_chunks(self):
        while True:
            item = self._queue.get(timeout=5)
            if item is self._CLOSED:
                return
            yield item

    def close(self):
        self._queue.put(self._CLOSED)


class FakeProvider:
    name = "fake"

    def __init__(self, source=None, error=None):
        self.source = source
        self.error = error
        self.requests = []

    @contextmanager
    def open_stream(self, req, token):
        self.requests.append(req)
        if self.error is not None:
            raise self.error
        yield self.source


def _conversation():
    return Conversation([ChatMessage(role="user", content="hi")])


def _request():
    return ChatRequest(model="m", messages=[ChatMessage(role="user", content="hi")])


def _contents(conv):
    return [(m.channel, m.content) for m in conv.tail(1)]


def test_stream_completes_with_done_marker():
    source = ListSource(FIVE_FRAMES + ["data: [DONE]\n"])
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    updates = []
    outcome = ctrl.start(conv, _request(), updates.append)
    assert outcome.state is StreamState.COMPLETED
    assert ctrl.state is StreamState.COMPLETED
    assert _contents(conv) == [("reasoning", "r1r2"), ("response", "a1a2a3")]
    assert [u.sequence for u in updates] == [1, 2, 3, 4, 5]
    assert outcome.updates == 5


def test_stream_completes_when_transport_closes():
    ctrl = StreamController(FakeProvider(ListSource(FIVE_FRAMES[:2])))
    conv = _conversation()
    outcome = ctrl.start(conv, _request())
    assert outcome.state is StreamState.COMPLETED
    assert _contents(conv) == [("reasoning", "r1r2")]


def test_malformed_frame_does_not_abort_stream():
    source = ListSource([frame("response", "A"), "not-json\n", frame("response", "B")])
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    outcome = ctrl.start(conv, _request())
    assert outcome.state is StreamState.COMPLETED
    assert outcome.skipped_frames == 1
    assert _contents(conv) == [("response", "AB")]


def test_cancel_after_two_frames_truncates_and_is_idempotent():
    source = ListSource(FIVE_FRAMES)
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()

    def sink(update):
        if update.sequence == 2:
            assert ctrl.cancel() is True

    outcome = ctrl.start(conv, _request(), sink)
    assert outcome.state is StreamState.CANCELLED
    assert ctrl.state is StreamState.CANCELLED
    assert _contents(conv) == [("reasoning", "r1r2")]
    assert source.closed
    assert ctrl.session.cancellation_requested
    assert ctrl.cancel() is False
    assert ctrl.state is StreamState.CANCELLED


def test_cancel_unblocks_pending_read():
    source = BlockingSource()
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    two_seen = threading.Event()
    result = {}

    def sink(update):
        if update.sequence == 2:
            two_seen.set()

    def run():
        result["outcome"] = ctrl.start(conv, _request(), sink)

    worker = threading.Thread(target=run)
    worker.start()
    source.push(FIVE_FRAMES[0])
    source.push(FIVE_FRAMES[1])
    assert two_seen.wait(5)
    # 不再推送任何数据，cancel 必须让阻塞的读取返回
    assert ctrl.cancel() is True
    worker.join(5)
    assert not worker.is_alive()
    assert result["outcome"].state is StreamState.CANCELLED
    assert _contents(conv) == [("reasoning", "r1r2")]


def test_pause_resume_is_transparent():
    baseline_conv = _conversation()
    StreamController(FakeProvider(ListSource(FIVE_FRAMES))).start(baseline_conv, _request())

    source = ListSource(FIVE_FRAMES)
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    paused = threading.Event()
    result = {}

    def sink(update):
        if update.sequence == 2:
            ctrl.pause()
            paused.set()

    worker = threading.Thread(target=lambda: result.setdefault("outcome", ctrl.start(conv, _request(), sink)))
    worker.start()
    assert paused.wait(5)
    assert ctrl.paused
    assert ctrl.state is StreamState.STREAMING
    worker.join(0.2)
    # 暂停期间不再从传输拉取数据
    assert worker.is_alive()
    assert source.reads == 2
    ctrl.resume()
    worker.join(5)
    assert not worker.is_alive()
    assert result["outcome"].state is StreamState.COMPLETED
    assert _contents(conv) == _contents(baseline_conv)


def test_cancel_while_paused():
    source = ListSource(FIVE_FRAMES)
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    paused = threading.Event()
    result = {}

    def sink(update):
        if update.sequence == 3:
            ctrl.pause()
            paused.set()

    worker = threading.Thread(target=lambda: result.setdefault("outcome", ctrl.start(conv, _request(), sink)))
    worker.start()
    assert paused.wait(5)
    assert ctrl.cancel() is True
    worker.join(5)
    assert result["outcome"].state is StreamState.CANCELLED
    assert _contents(conv) == [("reasoning", "r1r2"), ("response", "a1")]
    with pytest.raises(StreamStateError):
        ctrl.resume()


def test_provider_error_frame_errors_and_keeps_partial_content():
    source = ListSource([frame("response", "part"), 'data: {"error": {"message": "overloaded"}}\n', frame("response", "x")])
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    with pytest.raises(ProviderError) as exc_info:
        ctrl.start(conv, _request())
    assert "overloaded" in exc_info.value.message
    assert ctrl.state is StreamState.ERRORED
    assert _contents(conv) == [("response", "part")]
    assert ctrl.cancel() is False


def test_http_error_before_stream_is_errored():
    ctrl = StreamController(FakeProvider(error=ApiError(code="API_ERROR", message="bad", http_status=500)))
    conv = _conversation()
    with pytest.raises(ApiError):
        ctrl.start(conv, _request())
    assert ctrl.state is StreamState.ERRORED
    assert len(conv) == 1


def test_second_start_is_rejected():
    ctrl = StreamController(FakeProvider(ListSource(FIVE_FRAMES)))
    conv = _conversation()
    ctrl.start(conv, _request())
    with pytest.raises(StreamStateError):
        ctrl.start(conv, _request())


def test_concurrent_start_is_rejected():
    source = BlockingSource()
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    first = threading.Event()

    worker = threading.Thread(target=lambda: ctrl.start(conv, _request(), lambda u: first.set()))
    worker.start()
    source.push(FIVE_FRAMES[0])
    assert first.wait(5)
    with pytest.raises(StreamStateError):
        ctrl.start(conv, _request())
    ctrl.cancel()
    worker.join(5)
    assert ctrl.state is StreamState.CANCELLED


def test_pause_outside_streaming_is_rejected():
    ctrl = StreamController(FakeProvider(ListSource([])))
    with pytest.raises(StreamStateError):
        ctrl.pause()
    with pytest.raises(StreamStateError):
        ctrl.resume()
    assert ctrl.cancel() is False


def test_cancelling_exposed_token_cancels_stream():
    source = ListSource(FIVE_FRAMES)
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()

    def sink(update):
        if update.sequence == 1:
            ctrl.token.cancel()

    outcome = ctrl.start(conv, _request(), sink)
    assert outcome.state is StreamState.CANCELLED
    assert _contents(conv) == [("reasoning", "r1")]


def test_every_frame_notifies_once_including_metadata_frames():
    chunks = [
        'data: {"choices": [{"delta": {"reasoning": "think", "content": "ans"}}]}\n',
        'data: {"choices": [], "usage": {"total_tokens": 3}}\n',
        'data: {"choices": [{"delta": {"content": "!"}}]}\n',
        'data: {"choices": [{"delta": {"role": "assistant"}}]}\n',
    ]
    ctrl = StreamController(FakeProvider(ListSource(chunks)))
    conv = _conversation()
    updates = []
    outcome = ctrl.start(conv, _request(), updates.append)
    assert outcome.state is StreamState.COMPLETED
    assert len(updates) == outcome.frames == outcome.updates == 4
    assert [u.sequence for u in updates] == [1, 2, 3, 4]
    assert [[m.content for m in u.tail] for u in updates] == [
        ["think", "ans"],
        ["think", "ans"],
        ["think", "ans!"],
        ["think", "ans!"],
    ]
    assert [u.created for u in updates] == [True, False, False, False]
    assert _contents(conv) == [("reasoning", "think"), ("response", "ans!")]


def test_pause_during_pending_read_holds_next_frame():
    source = BlockingSource()
    ctrl = StreamController(FakeProvider(source))
    conv = _conversation()
    first = threading.Event()
    seen = []
    result = {}

    def sink(update):
        seen.append((update.sequence, ctrl.paused))
        first.set()

    worker = threading.Thread(target=lambda: result.setdefault("outcome", ctrl.start(conv, _request(), sink)))
    worker.start()
    source.push(FIVE_FRAMES[0])
    assert first.wait(5)
    # 消费者此时阻塞在下一次读取上
    ctrl.pause()
    source.push(FIVE_FRAMES[1])
    worker.join(0.3)
    assert worker.is_alive()
    assert seen == [(1, False)]
    assert _contents(conv) == [("reasoning", "r1")]

    ctrl.resume()
    source.push("data: [DONE]\n")
    worker.join(5)
    assert not worker.is_alive()
    assert result["outcome"].state is StreamState.COMPLETED
    assert seen == [(1, False), (2, False)]
    assert _contents(conv) == [("reasoning", "r1r2")]
