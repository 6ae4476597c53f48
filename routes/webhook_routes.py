"""
Webhook route handlers for Twilio WhatsApp and the Telegram Bot API
"""
import time
from flask import Blueprint, request, jsonify, current_app
from datetime import datetime, timezone
from utils.logger import get_logger, mask_phone
from utils.errors import BadRequest, NotFound, handle_api_errors
from utils.validators import (
    get_json_body, strip_whatsapp_prefix, validate_telegram_update, validate_twilio_inbound_message,
)
from services.message_router import dispatch, message_router
from services.metrics_service import metrics_service
from services.telegram_service import TelegramService
from config import Config

logger = get_logger(__name__)

# Create blueprint
webhook_bp = Blueprint('webhook', __name__, url_prefix='/api')


def _now():
    return datetime.now(timezone.utc).isoformat()


@webhook_bp.route('/whatsapp-webhook', methods=['POST'])
def whatsapp_webhook():
    """
    Handle inbound WhatsApp messages from Twilio

    Expected form fields: Body, From (whatsapp:+357...), MessageSid

    Always answers 200 so Twilio does not retry; the message is processed
    after the acknowledgement.
    """
    try:
        form = request.form.to_dict()

        try:
            validate_twilio_inbound_message(form)
        except ValueError as e:
            logger.error(f"Invalid WhatsApp webhook payload: {e}")
            return jsonify({'status': 'error', 'message': 'Invalid payload'}), 200

        phone_number = strip_whatsapp_prefix(form['From'])
        logger.info(f"WhatsApp message {form['MessageSid']} received from {mask_phone(phone_number)}")

        dispatch(
            message_router.handle_whatsapp_message,
            phone_number, form['Body'], form['MessageSid'],
            inline=current_app.config['PROCESS_WEBHOOKS_INLINE'],
        )

        return jsonify({'status': 'success'}), 200

    except Exception as e:
        logger.error(f"Error processing WhatsApp webhook: {e}")
        return jsonify({'status': 'error', 'message': 'Internal server error'}), 200


@webhook_bp.route('/telegram-webhook', methods=['POST'])
def telegram_webhook():
    """Receive a Telegram update, verify the secret header and process it"""
    started = time.time()
    secret = request.headers.get('X-Telegram-Bot-Api-Secret-Token')

    if not TelegramService.validate_webhook_signature(current_app.config['TELEGRAM_WEBHOOK_SECRET'], secret):
        logger.warning("Invalid Telegram webhook secret token")
        return jsonify({'success': False, 'error': 'Unauthorized'}), 401

    update = request.get_json(silent=True)
    try:
        validate_telegram_update(update)
    except ValueError as e:
        logger.error(f"Invalid Telegram update: {e}")
        return jsonify({'success': False, 'error': f'Invalid update: {e}'}), 400

    logger.info(f"Received Telegram update {update['update_id']}")

    try:
        dispatch(message_router.handle_telegram_update, update,
                 inline=current_app.config['PROCESS_WEBHOOKS_INLINE'])
    except Exception as e:
        logger.error(f"Error processing Telegram update {update['update_id']}: {e}")

    metrics_service.track_performance('webhook_response_time', (time.time() - started) * 1000)
    return jsonify({'ok': True}), 200


@webhook_bp.route('/telegram-webhook', methods=['GET'])
def telegram_webhook_status():
    return jsonify({'status': 'Telegram webhook endpoint is active', 'timestamp': _now()}), 200


@webhook_bp.route('/telegram-test', methods=['GET'])
def telegram_test():
    """Report which Telegram-related settings and services are usable"""
    bot_token = Config.TELEGRAM_BOT_TOKEN
    checks = {
        'telegram_bot_token': bool(bot_token),
        'telegram_webhook_secret': bool(current_app.config.get('TELEGRAM_WEBHOOK_SECRET')),
        'supabase_url': bool(Config.SUPABASE_URL),
        'supabase_service_role_key': bool(Config.SUPABASE_SERVICE_ROLE_KEY),
        'bot_token_format': len(bot_token.split(':')) == 2 if bot_token else False,
    }
    errors = {'service': None, 'authService': None}

    try:
        checks['telegram_service_initialized'] = bool(TelegramService().base_url)
    except Exception as e:
        errors['service'] = str(e)
        checks['telegram_service_initialized'] = False

    try:
        checks['telegram_auth_service_initialized'] = message_router.telegram_auth.supabase is not None
    except Exception as e:
        errors['authService'] = str(e)
        checks['telegram_auth_service_initialized'] = False

    return jsonify({'status': 'ok', 'checks': checks, 'errors': errors, 'timestamp': _now()}), 200


@webhook_bp.route('/test-message', methods=['POST'])
@handle_api_errors()
def test_message():
    """
    Manually run one message through the WhatsApp pipeline

    Expected payload: {"phoneNumber": "+35799123456", "message": "..."}
    """
    data = get_json_body()
    phone_number = data.get('phoneNumber')
    message = data.get('message')

    if not phone_number or not message:
        raise BadRequest('Missing phoneNumber or message')

    agent = message_router.find_agent_by_phone(phone_number)
    if agent is None:
        raise NotFound('Agent not found')

    logger.info(f"Test message for agent {agent['id']}: generating reply")
    reply = message_router.openai.generate_response(message, {'agent_id': agent['id']})

    send_result = message_router.whatsapp.send_message(phone_number, reply['text'], agent_id=agent['id'])
    logger.info(f"Test message for agent {agent['id']}: WhatsApp send success={send_result['success']}")

    return jsonify({
        'success': True,
        'agent': {'id': agent['id'], 'name': agent.get('name')},
        'aiResponse': {
            'text': reply['text'],
            'tokensUsed': reply['tokens_used']['total'],
            'costEstimate': reply['cost_estimate'],
        },
        'whatsapp': send_result,
    })


@webhook_bp.route('/webhook-test', methods=['GET'])
def webhook_test_get():
    logger.info(f"=== WEBHOOK TEST GET === {request.url}")
    return jsonify({'status': 'GET received', 'timestamp': _now()}), 200


@webhook_bp.route('/webhook-test', methods=['POST'])
def webhook_test_post():
    form = request.form.to_dict()
    logger.info(f"=== WEBHOOK TEST POST === {request.url} form={form}")
    return jsonify({'status': 'POST received', 'formDataKeys': list(form.keys()), 'timestamp': _now()}), 200
