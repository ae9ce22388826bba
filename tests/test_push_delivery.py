from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

import requests
from sqlalchemy import select

from app.errors import TransportError, TransportErrorKind
from app.models import Notification, PushPlatform, PushToken
from app.services.push_notifications import (
    CHANNEL_REQUEST_UPDATES,
    CHANNEL_SCHEDULE_REMINDERS,
    CHANNEL_WEEKLY_SUMMARIES,
    ERROR_CHANNEL_DISABLED,
    ERROR_DEVICE_NOT_REGISTERED,
    NOTIFICATION_TYPE_CLOCK_IN_REMINDER,
    NOTIFICATION_TYPE_MANAGER_ALERT,
    NOTIFICATION_TYPE_REQUEST_DENIED,
    NOTIFICATION_TYPE_WEEKLY_SUMMARY,
    ExpoPushTransport,
    NotificationRequest,
    PlatformPushTransport,
    PushMessage,
    PushTicket,
    WebPushTransport,
    channel_for_type,
    deactivate_push_token,
    priority_for_type,
    register_push_token,
    send_batch_notifications,
    send_notification,
)
from app.settings import get_settings
from sqlite_support import (
    FakeTransport,
    build_session_factory,
    seed_employee,
    seed_organization,
    seed_push_token,
)


class _RaisingTransport:
    def __init__(self, kind: TransportErrorKind):
        self.kind = kind
        self.calls = 0

    def send_batch(self, messages):  # type: ignore[no-untyped-def]
        self.calls += 1
        raise TransportError(self.kind, "provider unavailable")


class ChannelMappingTests(unittest.TestCase):
    def test_channels_by_type(self) -> None:
        self.assertEqual(channel_for_type(NOTIFICATION_TYPE_CLOCK_IN_REMINDER), CHANNEL_SCHEDULE_REMINDERS)
        self.assertEqual(channel_for_type(NOTIFICATION_TYPE_WEEKLY_SUMMARY), CHANNEL_WEEKLY_SUMMARIES)
        self.assertEqual(channel_for_type(NOTIFICATION_TYPE_REQUEST_DENIED), CHANNEL_REQUEST_UPDATES)
        self.assertEqual(channel_for_type("something_else"), "general")

    def test_manager_alerts_are_high_priority(self) -> None:
        self.assertEqual(priority_for_type(NOTIFICATION_TYPE_MANAGER_ALERT), "high")
        self.assertEqual(priority_for_type(NOTIFICATION_TYPE_CLOCK_IN_REMINDER), "default")


class SendNotificationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = build_session_factory()()
        self.organization = seed_organization(self.db)
        self.employee = seed_employee(self.db, self.organization)

    def tearDown(self) -> None:
        self.db.close()

    def _send(self, transport, notification_type: str = NOTIFICATION_TYPE_CLOCK_IN_REMINDER):  # type: ignore[no-untyped-def]
        return send_notification(
            self.db,
            employee_id=self.employee.id,
            organization_id=self.organization.id,
            notification_type=notification_type,
            title="Shift Starting Soon",
            body="Your Day shift starts at 09:00. Get ready!",
            data={"screen": "clock"},
            transport=transport,
        )

    def test_records_inbox_row_without_tokens(self) -> None:
        transport = FakeTransport()
        result = self._send(transport)

        row = self.db.get(Notification, result.notification_id)
        self.assertFalse(row.push_sent)
        self.assertEqual(row.push_error, "no_active_tokens")
        self.assertEqual(row.channel_id, CHANNEL_SCHEDULE_REMINDERS)
        self.assertEqual(transport.batches, [])

    def test_push_disabled_still_records_row(self) -> None:
        seed_push_token(self.db, self.employee)
        with patch("app.services.push_notifications.get_default_transport", return_value=None):
            result = self._send(None)

        row = self.db.get(Notification, result.notification_id)
        self.assertFalse(row.push_sent)
        self.assertEqual(row.push_error, "push_disabled")
        token = self.db.scalar(select(PushToken))
        self.assertEqual(token.failure_count, 0)

    def test_successful_delivery_stamps_row_and_token(self) -> None:
        token = seed_push_token(self.db, self.employee)
        transport = FakeTransport()

        result = self._send(transport)

        self.assertTrue(result.push_sent)
        self.assertEqual(result.sent, 1)
        row = self.db.get(Notification, result.notification_id)
        self.assertTrue(row.push_sent)
        self.assertIsNotNone(row.push_sent_at)
        self.assertIsNone(row.push_error)
        self.assertIsNotNone(token.last_used_at)
        message = transport.messages[0]
        self.assertEqual(message.data["notification_id"], result.notification_id)
        self.assertEqual(message.data["screen"], "clock")
        self.assertEqual(message.channel_id, CHANNEL_SCHEDULE_REMINDERS)

    def test_device_not_registered_deactivates_immediately(self) -> None:
        stale = seed_push_token(self.db, self.employee, token="https://push.example.test/sub/stale")
        fresh = seed_push_token(self.db, self.employee, token="https://push.example.test/sub/fresh")
        transport = FakeTransport(
            {stale.token: PushTicket(ok=False, error_code=ERROR_DEVICE_NOT_REGISTERED, message="gone")}
        )

        result = self._send(transport)

        self.assertTrue(result.push_sent)
        self.assertEqual(result.deactivated, 1)
        self.assertFalse(stale.is_active)
        self.assertEqual(stale.deactivated_reason, ERROR_DEVICE_NOT_REGISTERED)
        self.assertTrue(fresh.is_active)

    def test_third_failure_deactivates_token(self) -> None:
        token = seed_push_token(self.db, self.employee, failure_count=1)
        transport = FakeTransport({token.token: PushTicket(ok=False, error_code="HTTP_500", message="boom")})

        self._send(transport)
        self.assertTrue(token.is_active)
        self.assertEqual(token.failure_count, 2)

        result = self._send(transport)
        self.assertFalse(token.is_active)
        self.assertEqual(token.failure_count, 3)
        self.assertFalse(result.push_sent)
        row = self.db.get(Notification, result.notification_id)
        self.assertEqual(row.push_error, "boom")

    def test_transport_error_is_absorbed(self) -> None:
        token = seed_push_token(self.db, self.employee)
        transport = _RaisingTransport(TransportErrorKind.TRANSIENT)

        result = self._send(transport)

        self.assertEqual(transport.calls, 1)
        self.assertFalse(result.push_sent)
        self.assertEqual(result.failed, 1)
        self.assertEqual(token.failure_count, 1)
        self.assertTrue(token.is_active)

    def test_unregistered_transport_error_deactivates(self) -> None:
        token = seed_push_token(self.db, self.employee)
        self._send(_RaisingTransport(TransportErrorKind.UNREGISTERED))
        self.assertFalse(token.is_active)

    def test_tokens_are_sent_in_chunks_of_batch_size(self) -> None:
        for index in range(get_settings().push_batch_size + 5):
            self.db.add(
                PushToken(
                    employee_id=self.employee.id,
                    token=f"https://push.example.test/sub/{index}",
                    platform=PushPlatform.WEB,
                    p256dh="key",
                    auth="auth",
                    is_active=True,
                    failure_count=0,
                )
            )
        self.db.commit()
        transport = FakeTransport()

        result = self._send(transport)

        self.assertEqual([len(batch) for batch in transport.batches], [get_settings().push_batch_size, 5])
        self.assertEqual(result.sent, get_settings().push_batch_size + 5)

    def test_batch_send_isolates_failures(self) -> None:
        seed_push_token(self.db, self.employee)
        transport = FakeTransport()
        items = [
            NotificationRequest(
                employee_id=self.employee.id,
                organization_id=self.organization.id,
                notification_type=NOTIFICATION_TYPE_WEEKLY_SUMMARY,
                title="Your Weekly Summary",
                body="Total hours: 8h",
            ),
            NotificationRequest(
                employee_id=999_999,
                organization_id=self.organization.id,
                notification_type=NOTIFICATION_TYPE_WEEKLY_SUMMARY,
                title="Your Weekly Summary",
                body="Total hours: 8h",
            ),
        ]

        counts = send_batch_notifications(self.db, items, transport=transport)

        self.assertEqual(counts, {"sent": 1, "failed": 1})


class PushTokenRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = build_session_factory()()
        self.organization = seed_organization(self.db)
        self.employee = seed_employee(self.db, self.organization)

    def tearDown(self) -> None:
        self.db.close()

    def test_register_reactivates_existing_token(self) -> None:
        token = seed_push_token(self.db, self.employee, failure_count=3)
        token.is_active = False
        self.db.commit()

        row = register_push_token(
            self.db,
            employee_id=self.employee.id,
            token=f"  {token.token}  ",
            platform=PushPlatform.WEB,
            p256dh="new-key",
            auth="new-auth",
        )

        self.assertEqual(row.id, token.id)
        self.assertTrue(row.is_active)
        self.assertEqual(row.failure_count, 0)
        self.assertEqual(row.p256dh, "new-key")

    def test_deactivate_token(self) -> None:
        token = seed_push_token(self.db, self.employee)
        self.assertTrue(deactivate_push_token(self.db, employee_id=self.employee.id, token=token.token))
        self.assertFalse(token.is_active)
        self.assertFalse(deactivate_push_token(self.db, employee_id=self.employee.id, token="unknown"))


class WebPushTransportTests(unittest.TestCase):
    def test_disabled_transport_raises_transient_error(self) -> None:
        with patch("app.services.push_notifications.is_push_enabled", return_value=False):
            with self.assertRaises(TransportError) as ctx:
                WebPushTransport().send_batch([])
        self.assertEqual(ctx.exception.kind, TransportErrorKind.TRANSIENT)


def _expo_response(entries):  # type: ignore[no-untyped-def]
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"data": entries}
    return response


def _native_message(token: str) -> PushMessage:
    return PushMessage(
        token=token,
        title="Did You Forget to Clock Out?",
        body="Your Night shift ended at 06:00. Don't forget to clock out!",
        data={"screen": "clock"},
        channel_id=CHANNEL_SCHEDULE_REMINDERS,
        priority="default",
        ttl_seconds=3600,
        platform=PushPlatform.IOS,
    )


@patch("app.services.push_notifications.is_native_push_enabled", return_value=True)
class ExpoPushTransportTests(unittest.TestCase):
    def test_posts_batch_and_maps_tickets(self, _enabled) -> None:  # type: ignore[no-untyped-def]
        entries = [
            {"status": "ok", "id": "ticket-1"},
            {"status": "error", "message": "not registered", "details": {"error": "DeviceNotRegistered"}},
            {"status": "error", "message": "rate limited", "details": {"error": "MessageRateExceeded"}},
        ]
        with patch("app.services.push_notifications.requests.post", return_value=_expo_response(entries)) as post:
            tickets = ExpoPushTransport().send_batch(
                [_native_message(f"ExponentPushToken[{index}]") for index in range(3)]
            )

        self.assertTrue(tickets[0].ok)
        self.assertTrue(tickets[1].device_not_registered)
        self.assertEqual(tickets[2].error_code, "MessageRateExceeded")
        args, kwargs = post.call_args
        self.assertEqual(args[0], get_settings().expo_push_url)
        self.assertEqual(kwargs["json"][0]["to"], "ExponentPushToken[0]")
        self.assertEqual(kwargs["json"][0]["channelId"], CHANNEL_SCHEDULE_REMINDERS)
        self.assertEqual(kwargs["json"][0]["sound"], "default")

    def test_large_batches_are_split_at_one_hundred(self, _enabled) -> None:  # type: ignore[no-untyped-def]
        messages = [_native_message(f"ExponentPushToken[{index}]") for index in range(150)]

        def answer(url, *, json, headers, timeout):  # type: ignore[no-untyped-def]
            return _expo_response([{"status": "ok"} for _ in json])

        with patch("app.services.push_notifications.requests.post", side_effect=answer) as post:
            tickets = ExpoPushTransport().send_batch(messages)

        self.assertEqual([len(call.kwargs["json"]) for call in post.call_args_list], [100, 50])
        self.assertEqual(len(tickets), 150)

    def test_network_failure_is_transient(self, _enabled) -> None:  # type: ignore[no-untyped-def]
        with patch(
            "app.services.push_notifications.requests.post",
            side_effect=requests.ConnectionError("connection reset"),
        ):
            with self.assertRaises(TransportError) as ctx:
                ExpoPushTransport().send_batch([_native_message("ExponentPushToken[0]")])
        self.assertEqual(ctx.exception.kind, TransportErrorKind.TRANSIENT)


class PlatformRoutingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = build_session_factory()()
        self.organization = seed_organization(self.db)
        self.employee = seed_employee(self.db, self.organization)

    def tearDown(self) -> None:
        self.db.close()

    def _send(self, transport):  # type: ignore[no-untyped-def]
        return send_notification(
            self.db,
            employee_id=self.employee.id,
            organization_id=self.organization.id,
            notification_type=NOTIFICATION_TYPE_CLOCK_IN_REMINDER,
            title="Shift Starting Soon",
            body="Your Day shift starts at 09:00. Get ready!",
            transport=transport,
        )

    def test_native_token_is_delivered_through_expo_by_default(self) -> None:
        token = seed_push_token(self.db, self.employee, token="ExponentPushToken[ios]", platform=PushPlatform.IOS)

        with (
            patch("app.services.push_notifications.is_push_enabled", return_value=False),
            patch("app.services.push_notifications.is_native_push_enabled", return_value=True),
            patch(
                "app.services.push_notifications.requests.post",
                return_value=_expo_response([{"status": "ok"}]),
            ) as post,
        ):
            result = self._send(None)

        self.assertTrue(result.push_sent)
        self.assertEqual(post.call_args.kwargs["json"][0]["to"], token.token)
        self.assertEqual(token.failure_count, 0)
        self.assertIsNotNone(token.last_used_at)

    def test_native_device_not_registered_deactivates(self) -> None:
        token = seed_push_token(
            self.db, self.employee, token="ExponentPushToken[android]", platform=PushPlatform.ANDROID
        )
        gone = [{"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}}]

        with (
            patch("app.services.push_notifications.is_native_push_enabled", return_value=True),
            patch("app.services.push_notifications.requests.post", return_value=_expo_response(gone)),
        ):
            result = self._send(PlatformPushTransport(web=None, native=ExpoPushTransport()))

        self.assertEqual(result.deactivated, 1)
        self.assertFalse(token.is_active)
        self.assertEqual(token.deactivated_reason, ERROR_DEVICE_NOT_REGISTERED)

    def test_mixed_tokens_are_routed_by_platform(self) -> None:
        web_token = seed_push_token(self.db, self.employee)
        ios_token = seed_push_token(self.db, self.employee, token="ExponentPushToken[ios]", platform=PushPlatform.IOS)
        web = FakeTransport()
        native = FakeTransport()

        result = self._send(PlatformPushTransport(web=web, native=native))

        self.assertEqual(result.sent, 2)
        self.assertEqual([message.token for message in web.messages], [web_token.token])
        self.assertEqual([message.token for message in native.messages], [ios_token.token])
        self.assertEqual(native.messages[0].platform, PushPlatform.IOS)

    def test_unconfigured_channel_does_not_count_as_failure(self) -> None:
        web_token = seed_push_token(self.db, self.employee, failure_count=2)
        seed_push_token(self.db, self.employee, token="ExponentPushToken[ios]", platform=PushPlatform.IOS)

        result = self._send(PlatformPushTransport(web=None, native=FakeTransport()))

        self.assertTrue(result.push_sent)
        self.assertEqual(result.deactivated, 0)
        self.assertTrue(web_token.is_active)
        self.assertEqual(web_token.failure_count, 2)

    def test_channel_disabled_ticket_leaves_token_untouched(self) -> None:
        token = seed_push_token(self.db, self.employee, token="ExponentPushToken[ios]", platform=PushPlatform.IOS)

        result = self._send(PlatformPushTransport(web=FakeTransport(), native=None))

        self.assertFalse(result.push_sent)
        self.assertEqual(token.failure_count, 0)
        self.assertIsNone(token.last_failure_at)
        row = self.db.get(Notification, result.notification_id)
        self.assertEqual(row.push_error, "native push is not configured")

    def test_router_without_channels_answers_channel_disabled(self) -> None:
        tickets = PlatformPushTransport(web=None, native=None).send_batch([_native_message("ExponentPushToken[0]")])
        self.assertEqual([ticket.error_code for ticket in tickets], [ERROR_CHANNEL_DISABLED])


if __name__ == "__main__":
    unittest.main()
