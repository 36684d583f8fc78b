from __future__ import annotations

import logging

from medai_tasks.notifier import RealtimeNotifier


def test_broadcast_delivers_envelope_to_every_subscriber():
    notifier = RealtimeNotifier()
    first: list[dict] = []
    second: list[dict] = []
    notifier.subscribe(first.append)
    notifier.subscribe(second.append)

    delivered = notifier.broadcast('task_completed', {'task_id': 't-1', 'status': 'completed'})

    assert delivered == 2
    assert first == second
    message = first[0]
    assert message['channel'] == 'task-updates'
    assert message['type'] == 'task_completed'
    assert message['payload'] == {'task_id': 't-1', 'status': 'completed'}
    assert message['ts']


def test_unsubscribe_stops_delivery():
    notifier = RealtimeNotifier(channel='ops')
    received: list[dict] = []
    unsubscribe = notifier.subscribe(received.append)
    assert notifier.subscriber_count == 1

    unsubscribe()
    unsubscribe()
    notifier.broadcast('task_created', {'task_id': 't-1'})

    assert received == []
    assert notifier.subscriber_count == 0


def test_failing_subscriber_is_logged_and_others_still_receive(caplog):
    notifier = RealtimeNotifier()
    received: list[dict] = []

    def broken(_message):
        raise RuntimeError('socket closed')

    notifier.subscribe(broken)
    notifier.subscribe(received.append)

    with caplog.at_level(logging.WARNING, logger='medai_tasks.notifier'):
        delivered = notifier.broadcast('task_failed', {'task_id': 't-2'})

    assert delivered == 1
    assert len(received) == 1
    assert any('broadcast_subscriber_failed' in r.getMessage() for r in caplog.records)


def test_close_drops_all_subscribers():
    notifier = RealtimeNotifier()
    notifier.subscribe(lambda _m: None)
    notifier.subscribe(lambda _m: None)
    notifier.close()
    assert notifier.subscriber_count == 0
    assert notifier.broadcast('task_created', {}) == 0
