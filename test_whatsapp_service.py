"""
Tests for outbound WhatsApp messages through Twilio
"""
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioRestException

from services.whatsapp_service import SlidingWindowLimiter, WhatsAppService, format_whatsapp_number


def twilio_error(code, msg='Twilio says no'):
    return TwilioRestException(400, 'https://api.twilio.com/Messages.json', msg=msg, code=code)


@pytest.fixture
def twilio(monkeypatch):
    from config import Config

    monkeypatch.setattr(Config, 'TWILIO_WHATSAPP_NUMBER', '+35722000000')
    client = MagicMock()
    client.messages.create.return_value = SimpleNamespace(sid='SM123')
    return client


@pytest.fixture
def delays():
    return []


@pytest.fixture
def service(twilio, delays):
    return WhatsAppService(client=twilio, sleep=delays.append)


def test_format_whatsapp_number():
    assert format_whatsapp_number('+35799123456') == 'whatsapp:+35799123456'
    assert format_whatsapp_number('whatsapp:+35799123456') == 'whatsapp:+35799123456'


def test_send_message_and_log(service, twilio, fake_db):
    result = service.send_message('+35799123456', 'Hello', agent_id='agent-1')

    assert result['success'] is True
    assert result['message_id'] == 'SM123'
    assert result['error'] is None
    twilio.messages.create.assert_called_once_with(
        from_='whatsapp:+35722000000', to='whatsapp:+35799123456', body='Hello',
    )
    row = fake_db.rows('conversation_logs')[0]
    assert row['direction'] == 'outbound'
    assert row['message_id'] == 'SM123'
    assert row['delivery_status'] == 'queued'


def test_send_without_agent_is_not_logged(service, fake_db):
    service.send_message('+35799123456', 'Hello')
    assert fake_db.rows('conversation_logs') == []


def test_log_failure_does_not_fail_the_send(service, fake_db):
    fake_db.failing_tables.add('conversation_logs')
    assert service.send_message('+35799123456', 'Hello', agent_id='agent-1')['success'] is True


def test_transient_errors_are_retried_with_backoff(service, twilio, delays):
    twilio.messages.create.side_effect = [
        twilio_error(20429), ConnectionError('reset'), SimpleNamespace(sid='SM999'),
    ]

    result = service.send_message('+35799123456', 'Hello')

    assert result['message_id'] == 'SM999'
    assert delays == [1.0, 2.0]


def test_gives_up_after_three_attempts(service, twilio, delays):
    twilio.messages.create.side_effect = ConnectionError('reset')

    result = service.send_message('+35799123456', 'Hello')

    assert result['success'] is False
    assert result['error'] == 'Failed to send message: reset'
    assert twilio.messages.create.call_count == 3


@pytest.mark.parametrize('code, error', [
    (21211, 'Invalid phone number: +357991XXXXX'),
    (20003, 'Authentication error - invalid Twilio credentials'),
    (21408, 'Permission denied - unverified number: +357991XXXXX'),
])
def test_permanent_errors_are_not_retried(service, twilio, delays, code, error):
    twilio.messages.create.side_effect = twilio_error(code)

    result = service.send_message('+35799123456', 'Hello')

    assert result['error'] == error
    assert twilio.messages.create.call_count == 1
    assert delays == []


def test_waits_when_rate_limited(twilio, delays):
    service = WhatsAppService(client=twilio, rate_limit_per_second=1, sleep=delays.append)

    assert service.send_message('+35799123456', 'one')['success'] is True
    result = service.send_message('+35799123456', 'two')

    assert len(delays) == 1
    assert result['success'] is False
    assert result['error'] == 'Failed to send message: Rate limit exceeded after waiting'


def test_sliding_window_limiter():
    limiter = SlidingWindowLimiter(2, 60)

    assert limiter.check_limit() is True
    assert limiter.check_limit() is True
    assert limiter.check_limit() is False
    assert 0 < limiter.get_wait_time() <= 60


def test_missing_twilio_settings(monkeypatch):
    from config import Config

    monkeypatch.setattr(Config, 'TWILIO_ACCOUNT_SID', None)
    result = WhatsAppService(sleep=lambda _: None).send_message('+35799123456', 'Hello')

    assert result['success'] is False
    assert 'TWILIO_ACCOUNT_SID' in result['error']
