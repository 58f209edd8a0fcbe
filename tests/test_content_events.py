import threading

from creator_ingest.services.content_events import CONTENT_CREATED, CONTENT_UPDATED, ContentEvent, ContentEventStream


def _event(content_id: str, event_type: str = CONTENT_CREATED) -> ContentEvent:
    return ContentEvent(event_type, content_id, "creator-1", "rss")


def test_publish_reaches_every_subscriber():
    stream = ContentEventStream()
    first = stream.subscribe()
    second = stream.subscribe()
    assert stream.publish(_event("a")) == 2
    assert [e.content_id for e in first.drain()] == ["a"]
    assert [e.content_id for e in second.drain()] == ["a"]


def test_publish_without_subscribers_is_noop():
    assert ContentEventStream().publish(_event("a")) == 0


def test_subscription_filters_event_types():
    stream = ContentEventStream()
    sub = stream.subscribe([CONTENT_UPDATED])
    stream.publish(_event("a"))
    stream.publish(_event("b", CONTENT_UPDATED))
    assert [e.content_id for e in sub.drain()] == ["b"]


def test_full_buffer_drops_oldest():
    stream = ContentEventStream(buffer_size=2)
    sub = stream.subscribe()
    for cid in ("a", "b", "c"):
        stream.publish(_event(cid))
    assert [e.content_id for e in sub.drain()] == ["b", "c"]
    assert sub.dropped == 1


def test_closed_subscription_stops_receiving():
    stream = ContentEventStream()
    sub = stream.subscribe()
    sub.close()
    assert sub.closed is True
    assert stream.subscriber_count() == 0
    stream.publish(_event("a"))
    assert sub.get(timeout=0.01) is None


def test_get_times_out_with_none():
    sub = ContentEventStream().subscribe()
    assert sub.get(timeout=0.01) is None


def test_iteration_ends_when_stream_closes():
    stream = ContentEventStream()
    sub = stream.subscribe()
    received = []

    def consume():
        for event in sub:
            received.append(event.content_id)

    consumer = threading.Thread(target=consume)
    consumer.start()
    stream.publish(_event("a"))
    stream.publish(_event("b"))
    # Give the consumer a chance to pick both up before closing
    for _ in range(100):
        if len(received) == 2:
            break
        threading.Event().wait(0.01)
    stream.close()
    consumer.join(timeout=2)

    assert received == ["a", "b"]
    assert not consumer.is_alive()


def test_close_wakes_a_blocked_consumer():
    sub = ContentEventStream().subscribe()
    results = []
    consumer = threading.Thread(target=lambda: results.append(sub.get()))
    consumer.start()
    threading.Event().wait(0.05)
    sub.close()
    consumer.join(timeout=2)

    assert not consumer.is_alive()
    assert results == [None]


def test_buffered_events_delivered_before_close():
    stream = ContentEventStream()
    sub = stream.subscribe()
    stream.publish(_event("a"))
    sub.close()
    assert [e.content_id for e in sub] == ["a"]
    assert sub.get() is None
