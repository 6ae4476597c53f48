"""
Validation utilities for the Sophia application
"""
from typing import Dict, Any
import re

from flask import request

from utils.errors import BadRequest

EMAIL_REGEX = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
LOOSE_EMAIL_REGEX = re.compile(r'^\S+@\S+$', re.I)
E164_REGEX = re.compile(r'^\+?[1-9]\d{1,14}$')

def is_valid_email(email: Any) -> bool:
    """Strict email check used for registrations and template fields"""
    return isinstance(email, str) and bool(EMAIL_REGEX.match(email.strip()))

def is_valid_agent_email(email: Any) -> bool:
    """Loose email check used by the agent admin forms"""
    return isinstance(email, str) and bool(LOOSE_EMAIL_REGEX.match(email))

def is_valid_e164(phone: Any) -> bool:
    """Check E.164 phone format (e.g. +35799123456)"""
    return isinstance(phone, str) and bool(E164_REGEX.match(phone))

def strip_whatsapp_prefix(phone_number: str) -> str:
    """Twilio sends WhatsApp numbers as whatsapp:+123..."""
    return (phone_number or '').replace('whatsapp:', '').strip()

def validate_twilio_inbound_message(form: Dict[str, Any]) -> None:
    """
    Validate an inbound Twilio WhatsApp webhook payload

    Args:
        form: Form fields posted by Twilio

    Raises:
        ValueError: If validation fails
    """
    missing = [field for field in ('Body', 'From', 'MessageSid') if not form.get(field)]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")

def validate_telegram_update(data: Dict[str, Any]) -> None:
    """
    Validate the top-level shape of a Telegram Bot API update

    Args:
        data: The update payload

    Raises:
        ValueError: If validation fails
    """
    if not isinstance(data, dict):
        raise ValueError("Update must be a JSON object")

    if not isinstance(data.get('update_id'), int):
        raise ValueError("Missing required field: update_id")

    message = data.get('message')
    if message is None:
        return

    if not isinstance(message, dict):
        raise ValueError("message must be an object")

    chat = message.get('chat')
    if not isinstance(chat, dict) or 'id' not in chat:
        raise ValueError("message.chat.id is required")

def get_json_body() -> Dict[str, Any]:
    """
    Parse the request body as a JSON object

    Raises:
        BadRequest: Body is missing, malformed or not an object
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('Invalid JSON payload')
    return data
