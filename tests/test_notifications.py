"""Notification dispatcher, realtime hub and direct messages."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from gigmarket.commands.submit_application import submit_application
from gigmarket.db import crud
from gigmarket.domain.errors import AuthorizationError, NotFoundError, ValidationError
from gigmarket.domain.models import ApplicationDetails, PendingNotification
from gigmarket.domain.states import ApplicationStatus, NotificationType
from gigmarket.services import messaging, notifications
from gigmarket.services.realtime import NotificationHub

from conftest import caller_for


async def seed(db, user, count=1, type=NotificationType.JOB_STARTED):
    created = []
    for i in range(count):
        created.append(await notifications.notify(
            db, user_id=user.id, title=f"Note {i}", message="Something happened", type=type,
        ))
    return created


class TestNotify:
    """Storing notifications never breaks the caller."""

    @pytest.mark.asyncio
    async def test_notify_stores_row(self, db, worker):
        note = await notifications.notify(
            db,
            user_id=worker.id,
            title="Job Started",
            message="Worker has started working on your job",
            type=NotificationType.JOB_STARTED,
            source_id=7,
            source_type="job",
            metadata={"worker_id": 3},
        )

        assert note.id is not None
        assert note.is_read is False
        serialized = notifications.serialize(note)
        assert serialized["type"] == "job_started"
        assert serialized["metadata"] == {"worker_id": 3}

    @pytest.mark.asyncio
    async def test_storage_failure_is_swallowed(self, db, open_job, poster, worker):
        with patch("gigmarket.services.notifications.Notification", side_effect=SQLAlchemyError("disk full")):
            application = await submit_application(db, open_job.id, worker.id, ApplicationDetails())

        # The triggering operation went through; only the notification is missing
        assert application.status == ApplicationStatus.PENDING
        assert await crud.get_application(db, application.id) is not None
        assert await crud.list_notifications(db, poster.id) == []

    @pytest.mark.asyncio
    async def test_failed_insert_rolls_back_only_itself(self, db, worker):
        await seed(db, worker)

        with patch.object(db, "flush", side_effect=SQLAlchemyError("constraint")):
            result = await notifications.notify(db, worker.id, "t", "m", NotificationType.JOB_STARTED)

        assert result is None
        assert len(await crud.list_notifications(db, worker.id)) == 1

    @pytest.mark.asyncio
    async def test_dispatch_skips_failures(self, db, poster, worker):
        pending = [
            PendingNotification(user_id=worker.id, title="A", message="a", type=NotificationType.PAYMENT_FAILED),
            PendingNotification(user_id=poster.id, title="B", message="b", type=NotificationType.PAYMENT_FAILED),
        ]

        stored = await notifications.dispatch(db, pending)

        assert [n.user_id for n in stored] == [worker.id, poster.id]

    @pytest.mark.asyncio
    async def test_notify_pushes_to_connected_socket(self, db, worker):
        hub = NotificationHub()
        socket = AsyncMock()
        await hub.connect(worker.id, socket)

        with patch("gigmarket.services.notifications.hub", hub):
            note = await notifications.notify(db, worker.id, "Hello", "there", NotificationType.NEW_MESSAGE)
            await hub.drain()
            socket.send_json.assert_not_awaited()

            await db.commit()
            await hub.drain()

        socket.accept.assert_awaited_once()
        payload = socket.send_json.await_args.args[0]
        assert payload["event"] == "notification"
        assert payload["notification"]["id"] == note.id

    @pytest.mark.asyncio
    async def test_rolled_back_notification_is_not_pushed(self, db, worker):
        worker_id = worker.id
        await db.commit()
        hub = NotificationHub()
        socket = AsyncMock()
        await hub.connect(worker_id, socket)

        with patch("gigmarket.services.notifications.hub", hub):
            await notifications.notify(db, worker_id, "Hello", "there", NotificationType.NEW_MESSAGE)
            await db.rollback()
            await hub.drain()

        socket.send_json.assert_not_awaited()
        assert await crud.list_notifications(db, worker_id) == []


class TestInbox:
    """Listing and managing a user's own notifications."""

    @pytest.mark.asyncio
    async def test_list_newest_first(self, db, worker):
        created = await seed(db, worker, count=3)

        listed = await notifications.list_notifications(db, caller_for(worker))

        assert [n.id for n in listed] == [n.id for n in reversed(created)]

    @pytest.mark.asyncio
    async def test_mark_read_and_count(self, db, worker):
        first, _ = await seed(db, worker, count=2)
        caller = caller_for(worker)

        await notifications.mark_read(db, caller, first.id)

        assert first.is_read is True
        assert await notifications.unread_count(db, caller) == 1
        unread = await notifications.list_notifications(db, caller, unread_only=True)
        assert first.id not in [n.id for n in unread]

    @pytest.mark.asyncio
    async def test_mark_all_read(self, db, worker, poster):
        await seed(db, worker, count=3)
        await seed(db, poster, count=1)

        updated = await notifications.mark_all_read(db, caller_for(worker))

        assert updated == 3
        assert await notifications.unread_count(db, caller_for(worker)) == 0
        assert await notifications.unread_count(db, caller_for(poster)) == 1

    @pytest.mark.asyncio
    async def test_cannot_touch_others_notifications(self, db, worker, poster):
        (note,) = await seed(db, worker)

        with pytest.raises(AuthorizationError):
            await notifications.mark_read(db, caller_for(poster), note.id)
        with pytest.raises(AuthorizationError):
            await notifications.delete_notification(db, caller_for(poster), note.id)

        assert await crud.get_notification(db, note.id) is not None

    @pytest.mark.asyncio
    async def test_delete(self, db, worker):
        (note,) = await seed(db, worker)

        await notifications.delete_notification(db, caller_for(worker), note.id)

        assert await crud.list_notifications(db, worker.id) == []

    @pytest.mark.asyncio
    async def test_missing_notification(self, db, worker):
        with pytest.raises(NotFoundError):
            await notifications.mark_read(db, caller_for(worker), 12345)


class TestNotificationHub:
    """Realtime fan-out to open websockets."""

    @pytest.mark.asyncio
    async def test_publish_without_listeners_is_noop(self):
        hub = NotificationHub()
        hub.publish(1, {"event": "notification"})
        await hub.drain()

    @pytest.mark.asyncio
    async def test_failing_socket_dropped(self):
        hub = NotificationHub()
        good, bad = AsyncMock(), AsyncMock()
        bad.send_json.side_effect = RuntimeError("socket closed")
        await hub.connect(1, good)
        await hub.connect(1, bad)

        hub.publish(1, {"event": "notification"})
        await hub.drain()

        good.send_json.assert_awaited_once_with({"event": "notification"})
        assert hub.connection_count(1) == 1

    @pytest.mark.asyncio
    async def test_disconnect(self):
        hub = NotificationHub()
        socket = AsyncMock()
        await hub.connect(4, socket)

        hub.disconnect(4, socket)
        hub.disconnect(4, socket)

        assert hub.connection_count(4) == 0


class TestMessaging:
    """Direct messages between users."""

    @pytest.mark.asyncio
    async def test_send_notifies_recipient(self, db, poster, worker, open_job):
        message = await messaging.send_message(db, caller_for(poster), worker.id, "  Can you start at 9?  ", job_id=open_job.id)

        assert message.content == "Can you start at 9?"
        note = (await crud.list_notifications(db, worker.id))[0]
        assert note.type == NotificationType.NEW_MESSAGE
        assert note.title == "New message from Pat Poster"

    @pytest.mark.asyncio
    async def test_long_message_preview_truncated(self, db, poster, worker):
        await messaging.send_message(db, caller_for(poster), worker.id, "x" * 200)

        note = (await crud.list_notifications(db, worker.id))[0]
        assert len(note.message) == messaging.PREVIEW_LENGTH
        assert note.message.endswith("...")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   "])
    async def test_empty_content_rejected(self, db, poster, worker, content):
        with pytest.raises(ValidationError):
            await messaging.send_message(db, caller_for(poster), worker.id, content)

    @pytest.mark.asyncio
    async def test_cannot_message_self(self, db, poster):
        with pytest.raises(ValidationError):
            await messaging.send_message(db, caller_for(poster), poster.id, "hi")

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, db, poster):
        with pytest.raises(NotFoundError):
            await messaging.send_message(db, caller_for(poster), 999, "hi")

    @pytest.mark.asyncio
    async def test_conversation_marks_incoming_read(self, db, poster, worker):
        await messaging.send_message(db, caller_for(poster), worker.id, "Hi")
        await messaging.send_message(db, caller_for(worker), poster.id, "Hello")

        conversation = await messaging.get_conversation(db, caller_for(worker), poster.id)

        assert [m.content for m in conversation] == ["Hi", "Hello"]
        assert conversation[0].is_read is True
        summaries = await messaging.list_conversations(db, caller_for(poster))
        assert summaries[0]["user_id"] == worker.id
        assert summaries[0]["last_message"] == "Hello"
        assert summaries[0]["unread_count"] == 1
