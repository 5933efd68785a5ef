"""Tests for the Evolution API client and the notification texts."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock, patch

import httpx
import pytest

from clinic_agent.models import Appointment, Patient, Procedure, Provider
from clinic_agent.services.messaging import MAX_RETRIES, EvolutionClient, MessagingError
from clinic_agent.services.notifications import NotificationService


def _client() -> EvolutionClient:
    return EvolutionClient(base_url="http://evolution.test", api_key="key-123", instance="clinic")


def _appointment() -> Appointment:
    return Appointment(
        id="appt-1",
        patient=Patient(address="5511999990000", name="Maria Souza"),
        provider=Provider(name="Dr. Ana Lima", calendar_id="cal-ana"),
        procedure=Procedure(name="Dental Cleaning", duration_minutes=60),
        start_time=datetime.fromisoformat("2026-03-03T09:00:00-03:00"),
        end_time=datetime.fromisoformat("2026-03-03T10:00:00-03:00"),
    )


# ── EvolutionClient ──────────────────────────────────────────────────


class TestEvolutionClient:
    def test_send_text_posts_to_instance_endpoint(self, mock_http_response):
        client = _client()
        with patch.object(client._client, "post", return_value=mock_http_response({"key": {}})) as mock_post:
            client.send_text("5511999990000", "Hello")

        path = mock_post.call_args[0][0]
        assert path == "/message/sendText/clinic"
        assert mock_post.call_args[1]["json"]["number"] == "5511999990000"
        assert mock_post.call_args[1]["json"]["text"] == "Hello"

    def test_api_key_header(self):
        assert _client()._client.headers["apikey"] == "key-123"

    def test_4xx_raises_without_retry(self, mock_http_response):
        client = _client()
        with patch.object(client._client, "post", return_value=mock_http_response({"error": "bad"}, 400)) as mock_post:
            with pytest.raises(MessagingError) as exc_info:
                client.send_text("5511999990000", "Hello")
        assert exc_info.value.status_code == 400
        assert mock_post.call_count == 1

    @patch("clinic_agent.services.messaging.time.sleep")
    def test_5xx_is_retried_then_fails(self, mock_sleep, mock_http_response):
        client = _client()
        with patch.object(client._client, "post", return_value=mock_http_response({"error": "x"}, 502)) as mock_post:
            with pytest.raises(MessagingError, match="failed after"):
                client.send_text("5511999990000", "Hello")
        assert mock_post.call_count == MAX_RETRIES

    @patch("clinic_agent.services.messaging.time.sleep")
    def test_timeout_then_success(self, mock_sleep, mock_http_response):
        client = _client()
        with patch.object(
            client._client, "post",
            side_effect=[httpx.TimeoutException("slow"), mock_http_response({"key": {}})],
        ):
            client.send_text("5511999990000", "Hello")
        mock_sleep.assert_called_once()

    def test_mark_as_read_failure_is_swallowed(self, mock_http_response):
        client = _client()
        with patch.object(client._client, "post", return_value=mock_http_response({"error": "x"}, 404)):
            client.mark_as_read("MSG1", "5511999990000@s.whatsapp.net")

    def test_typing_failure_is_swallowed(self, mock_http_response):
        client = _client()
        with patch.object(client._client, "post", return_value=mock_http_response({"error": "x"}, 400)):
            client.send_typing("5511999990000", 1500)


# ── NotificationService ──────────────────────────────────────────────


class TestNotifications:
    def _service(self, **kwargs):
        messaging = MagicMock()
        defaults = dict(
            clinic_name="Smile Clinic", clinic_phone="551130000000",
            clinic_address="1 Main St", attendant_phone="5511977770000",
        )
        defaults.update(kwargs)
        return NotificationService(messaging, **defaults), messaging

    def test_24h_reminder_text(self):
        service, _ = self._service()
        text = service.reminder_24h_text(_appointment())
        assert "Maria!" in text
        assert "Dental Cleaning" in text
        assert "Tuesday, 03 March 2026 at 09:00" in text
        assert "551130000000" in text

    def test_24h_reminder_without_phone_omits_line(self):
        service, _ = self._service(clinic_phone="")
        assert "call us" not in service.reminder_24h_text(_appointment())

    def test_2h_reminder_uses_local_time_and_address(self):
        service, _ = self._service()
        text = service.reminder_2h_text(_appointment())
        assert "*09:00*" in text
        assert "1 Main St" in text

    def test_send_survey_goes_to_patient(self):
        service, messaging = self._service()
        service.send_survey(_appointment())
        to, text = messaging.send_text.call_args[0]
        assert to == "5511999990000"
        assert "1 to 5" in text

    def test_notify_attendant(self):
        service, messaging = self._service()
        assert service.notify_attendant("5511999990000", "Insurance question") is True
        to, text = messaging.send_text.call_args[0]
        assert to == "5511977770000"
        assert "Insurance question" in text
        assert "resume" in text

    def test_notify_attendant_without_phone(self):
        service, messaging = self._service(attendant_phone="")
        assert service.notify_attendant("5511999990000", None) is False
        messaging.send_text.assert_not_called()
