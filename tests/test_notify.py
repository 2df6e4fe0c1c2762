"""Tests for the notification sinks."""

import pytest

from crm_sync.notify import LogNotifier, Notification, RecordingNotifier


@pytest.mark.parametrize("limit, kept", [
    (0, []),
    (2, ["b", "c"]),
    (5, ["a", "b", "c"]),
])
def test_recording_notifier_keeps_most_recent(limit, kept):
    notifier = RecordingNotifier(limit=limit)

    for title in ("a", "b", "c"):
        notifier.notify(Notification(title=title))

    assert [n.title for n in notifier.notifications] == kept


def test_log_notifier_accepts_both_variants():
    notifier = LogNotifier()
    notifier.notify(Notification(title="Sync complete"))
    notifier.notify(Notification(title="Sync failed", variant="destructive"))
