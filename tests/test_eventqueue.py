import io
import json
import os
import threading
import time
from datetime import datetime, timezone

import pytest

from lexd.eventqueue import DEFAULT_QUEUE_CAPACITY, EventQueue, QueueStoppedError
from lexd.logger import init_logger
from lexd.models import ApplicationSettings, Event, EventType


@pytest.fixture(autouse=True)
def quiet_logger():
    init_logger(ApplicationSettings(log_level="error", log_format="text"), io.StringIO())


@pytest.fixture
def persist_path(tmp_path):
    return str(tmp_path / "queue_state.json")


@pytest.mark.parametrize(
    "requested, expected",
    [(50, 50), (0, DEFAULT_QUEUE_CAPACITY), (-10, DEFAULT_QUEUE_CAPACITY)],
)
def test_capacity(requested, expected):
    queue = EventQueue(requested, "")
    assert queue.capacity == expected
    assert queue.persist_path == ""


def test_persist_path_is_kept(persist_path):
    queue = EventQueue(50, persist_path)
    assert queue.persist_path == persist_path
    assert DEFAULT_QUEUE_CAPACITY == 1000


def test_enqueue_dequeue_is_fifo():
    queue = EventQueue(10, "")
    queue.start()
    first = Event(action_id="action1", source_id="source1")
    second = Event(action_id="action2", source_id="source2")
    queue.enqueue(first)
    queue.enqueue(second)

    out1 = queue.dequeue()
    out2 = queue.dequeue()
    queue.stop()

    assert (out1.action_id, out1.source_id) == ("action1", "source1")
    assert (out2.action_id, out2.source_id) == ("action2", "source2")
    assert out1.id and out2.id
    assert out1.id != out2.id


def test_enqueue_assigns_id_without_touching_caller_event():
    queue = EventQueue(1, "")
    queue.start()
    event = Event(action_id="action1")
    assigned = queue.enqueue(event)
    out = queue.dequeue()
    queue.stop()
    assert assigned
    assert out.id == assigned
    assert event.id == ""


def test_enqueue_keeps_existing_id():
    queue = EventQueue(1, "")
    assert queue.enqueue(Event(id="evt-1", action_id="a")) == "evt-1"
    assert queue.dequeue().id == "evt-1"


def test_enqueue_after_stop_raises():
    queue = EventQueue(1, "")
    queue.start()
    queue.stop()
    with pytest.raises(QueueStoppedError, match="event queue is stopped"):
        queue.enqueue(Event(action_id="action1"))


def test_dequeue_after_stop_on_empty_queue_raises():
    queue = EventQueue(1, "")
    queue.start()
    queue.stop()
    with pytest.raises(QueueStoppedError, match="event queue stopped"):
        queue.dequeue()


def test_dequeue_after_stop_returns_remaining_items():
    queue = EventQueue(5, "")
    queue.start()
    queue.enqueue(Event(action_id="action1"))
    queue.stop()

    assert queue.dequeue().action_id == "action1"
    with pytest.raises(QueueStoppedError, match="event queue stopped"):
        queue.dequeue()


def test_enqueue_blocks_while_full():
    queue = EventQueue(1, "")
    queue.enqueue(Event(action_id="first"))
    worker = threading.Thread(target=queue.enqueue, args=(Event(action_id="second"),))
    worker.start()
    time.sleep(0.1)
    assert worker.is_alive()
    assert len(queue) == 1

    assert queue.dequeue().action_id == "first"
    worker.join(timeout=2)
    assert not worker.is_alive()
    assert queue.dequeue().action_id == "second"


def test_stop_releases_blocked_enqueue():
    queue = EventQueue(1, "")
    queue.enqueue(Event(action_id="first"))
    errors = []

    def blocked():
        try:
            queue.enqueue(Event(action_id="second"))
        except QueueStoppedError as error:
            errors.append(error)

    worker = threading.Thread(target=blocked)
    worker.start()
    time.sleep(0.05)
    queue.stop()
    worker.join(timeout=2)
    assert not worker.is_alive()
    assert len(errors) == 1
    assert "event queue is stopped" in str(errors[0])

    assert queue.dequeue().action_id == "first"
    with pytest.raises(QueueStoppedError, match="event queue stopped"):
        queue.dequeue()


def test_persistence_save_and_load(persist_path):
    first_queue = EventQueue(10, persist_path)
    first_queue.start()
    first_queue.enqueue(Event(action_id="act1", source_id="s1", parameters={"p1": "v1"}))
    first_queue.enqueue(Event(action_id="act2", source_id="s2"))
    first_queue.stop()

    with open(persist_path, encoding="utf-8") as handle:
        data = handle.read()
    assert data.startswith("[")
    assert not os.path.exists(persist_path + ".tmp")

    second_queue = EventQueue(10, persist_path)
    second_queue.start()
    out1 = second_queue.dequeue()
    out2 = second_queue.dequeue()

    assert (out1.action_id, out1.source_id, out1.parameters) == ("act1", "s1", {"p1": "v1"})
    assert (out2.action_id, out2.source_id) == ("act2", "s2")
    assert out2.parameters is None
    assert out1.id and out2.id and out1.id != out2.id
    assert len(second_queue) == 0
    second_queue.stop()


def test_persistence_keeps_event_fields(persist_path):
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    original = Event(
        id="evt-1",
        source_id="cli_trigger",
        type=EventType.MANUAL,
        action_id="deploy",
        timestamp=stamp,
        parameters={"env": "staging"},
    )
    queue = EventQueue(10, persist_path)
    queue.enqueue(original)
    queue.stop()

    reloaded = EventQueue(10, persist_path)
    reloaded.start()
    assert reloaded.dequeue() == original


def test_load_missing_file_starts_empty(persist_path):
    queue = EventQueue(10, persist_path)
    queue.start()
    assert len(queue) == 0
    assert not os.path.exists(persist_path)


def test_load_empty_file_starts_empty(persist_path):
    with open(persist_path, "w", encoding="utf-8"):
        pass
    queue = EventQueue(10, persist_path)
    queue.start()
    assert len(queue) == 0


def test_load_invalid_json_starts_empty(persist_path):
    with open(persist_path, "w", encoding="utf-8") as handle:
        handle.write("[{invalid json")
    queue = EventQueue(10, persist_path)
    queue.start()
    assert len(queue) == 0


def test_load_stops_when_queue_is_full(persist_path):
    records = [Event(id=f"evt-{n}", action_id=f"act{n}").to_dict() for n in range(3)]
    with open(persist_path, "w", encoding="utf-8") as handle:
        json.dump(records, handle)
    queue = EventQueue(2, persist_path)
    queue.start()
    assert len(queue) == 2
    assert [queue.dequeue().id, queue.dequeue().id] == ["evt-0", "evt-1"]


def test_save_empty_queue_writes_empty_array(persist_path):
    queue = EventQueue(10, persist_path)
    queue.start()
    queue.stop()
    with open(persist_path, encoding="utf-8") as handle:
        assert handle.read().strip() == "[]"


def test_no_persist_path_writes_nothing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    queue = EventQueue(10, "")
    queue.start()
    queue.enqueue(Event(action_id="act1"))
    queue.stop()
    assert os.listdir(tmp_path) == []
    assert len(queue) == 1


def test_second_stop_does_nothing(persist_path):
    queue = EventQueue(10, persist_path)
    queue.enqueue(Event(action_id="act1"))
    queue.stop()
    with open(persist_path, "w", encoding="utf-8") as handle:
        handle.write("sentinel")
    queue.stop()
    with open(persist_path, encoding="utf-8") as handle:
        assert handle.read() == "sentinel"


def test_stop_dequeue_race():
    queue = EventQueue(100, "")
    queue.start()
    taken = []
    lock = threading.Lock()

    def consume():
        for _ in range(25):
            try:
                event = queue.dequeue()
            except QueueStoppedError:
                return
            with lock:
                taken.append(event.action_id)

    consumers = [threading.Thread(target=consume) for _ in range(2)]
    for consumer in consumers:
        consumer.start()
    for n in range(50):
        queue.enqueue(Event(action_id=f"action_{n}"))
    time.sleep(0.01)
    queue.stop()
    for consumer in consumers:
        consumer.join(timeout=5)

    assert all(not consumer.is_alive() for consumer in consumers)
    assert len(taken) + len(queue) == 50
    assert len(set(taken)) == len(taken)