"""Tests for handler notification tracking."""

import logging

from fleetplay.handlers import NotificationQueue
from fleetplay.playbook import Handler


def make_handlers():
    return [
        Handler("reload nginx", "service", args={"name": "nginx", "state": "reloaded"}),
        Handler("restart app", "command", args={"_raw_params": "true"}, listen=["app config"]),
        Handler("restart worker", "command", args={"_raw_params": "true"}, listen=["app config"]),
    ]


class TestNotificationQueue:
    """Tests for NotificationQueue."""

    def test_notify_by_name(self):
        """Test notifying a handler by its name."""
        queue = NotificationQueue(make_handlers())
        newly = queue.notify(["reload nginx"])
        assert [h.name for h in newly] == ["reload nginx"]
        assert len(queue) == 1

    def test_notify_twice(self):
        """Test repeated notifications keep a single entry."""
        queue = NotificationQueue(make_handlers())
        queue.notify(["reload nginx"])
        assert queue.notify(["reload nginx"]) == []
        assert len(queue) == 1

    def test_listen_topic(self):
        """Test a listen topic notifies every handler listening to it."""
        queue = NotificationQueue(make_handlers())
        queue.notify(["app config"])
        assert [h.name for h in queue.pending()] == ["restart app", "restart worker"]

    def test_declaration_order(self):
        """Test pending handlers follow declaration order, not notification order."""
        handlers = make_handlers()
        queue = NotificationQueue(handlers)
        queue.notify(["restart worker"])
        queue.notify(["reload nginx"])
        assert [h.name for h in queue.pending()] == ["reload nginx", "restart worker"]
        assert queue.positions() == [0, 2]
        assert queue.is_notified(handlers[2])
        assert not queue.is_notified(handlers[1])

    def test_unknown_topic_warns(self, caplog):
        """Test a notification without handlers is logged."""
        queue = NotificationQueue(make_handlers())
        with caplog.at_level(logging.WARNING, logger="fleetplay.handlers"):
            assert queue.notify(["restart ghost"]) == []
        assert "restart ghost" in caplog.text
        assert len(queue) == 0

    def test_clear(self):
        """Test clearing pending notifications."""
        queue = NotificationQueue(make_handlers())
        queue.notify(["app config"])
        queue.clear()
        assert queue.pending() == []
