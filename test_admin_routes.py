"""
Tests for the admin dashboard endpoints
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

import routes.admin_routes as admin_routes
from services.chatbase_service import ChatbaseConfigError, ChatbaseError


def ago(**delta):
    return (datetime.now(timezone.utc) - timedelta(**delta)).isoformat()


@pytest.fixture
def agent(fake_db):
    return fake_db.seed('agents', {
        'name': 'Eleni Georgiou',
        'email': 'eleni@example.com',
        'phone_number': '+35799123456',
        'status': 'active',
        'is_active': True,
    })


def test_admin_endpoints_require_a_session(client):
    for path in ('/api/admin/stats', '/api/admin/activity', '/api/admin/health', '/api/admin/logs'):
        assert client.get(path).status_code == 401


def test_stats(client, admin_headers, fake_db, agent):
    fake_db.seed('agents', {'name': 'Gone', 'status': 'inactive'})
    fake_db.seed(
        'conversation_logs',
        {'agent_id': agent['id'], 'direction': 'inbound', 'created_at': ago(seconds=1)},
        {'agent_id': agent['id'], 'direction': 'outbound', 'created_at': ago(seconds=1)},
        {'agent_id': agent['id'], 'direction': 'inbound', 'created_at': ago(days=3)},
    )
    fake_db.seed('document_generations', {'agent_id': agent['id'], 'created_at': ago(days=2)})
    fake_db.seed('calculator_history', {'calculator_id': 'transfer_fees', 'created_at': ago(days=10)})

    resp = client.get('/api/admin/stats', headers=admin_headers)

    assert resp.status_code == 200
    assert resp.get_json() == {
        'success': True,
        'totalAgents': 1,
        'activeConversations': 2,
        'messagesToday': 2,
        'documentsThisWeek': 1,
        'calculatorsThisWeek': 0,
    }


def test_stats_database_failure(client, admin_headers, fake_db):
    fake_db.failing_tables.add('agents')

    resp = client.get('/api/admin/stats', headers=admin_headers)

    assert resp.status_code == 500
    assert resp.get_json() == {'success': False, 'error': 'Failed to fetch dashboard statistics'}


def test_local_midnight_is_in_business_timezone():
    # 23:30 UTC on 1 June is already 2 June in Nicosia (UTC+3)
    now = datetime(2025, 6, 1, 23, 30, tzinfo=timezone.utc)
    assert admin_routes._local_midnight_utc(now) == datetime(2025, 6, 1, 21, 0, tzinfo=timezone.utc)


def test_activity_merges_sources(client, admin_headers, fake_db, agent):
    fake_db.seed('conversation_logs', {
        'agent_id': agent['id'], 'direction': 'inbound', 'channel': 'telegram', 'created_at': ago(minutes=5),
    })
    fake_db.seed('document_generations', {
        'agent_id': agent['id'], 'template_filename': 'Reg_Banks', 'created_at': ago(minutes=1),
    })
    fake_db.seed('calculator_history', {
        'agent_id': 'missing-agent', 'calculator_id': 'vat_calculator', 'created_at': ago(minutes=3),
    })

    resp = client.get('/api/admin/activity', headers=admin_headers)

    activities = resp.get_json()['activities']
    assert [item['type'] for item in activities] == ['document', 'calculator', 'message']
    assert activities[0]['description'] == 'Generated Reg_Banks document'
    assert activities[0]['agentName'] == 'Eleni Georgiou'
    assert activities[1]['agentName'] == 'Unknown Agent'
    assert activities[1]['description'] == 'Used vat_calculator calculator'
    assert activities[2]['description'] == 'Received telegram message'


def test_activity_skips_a_failing_source(client, admin_headers, fake_db, agent):
    fake_db.seed('conversation_logs', {'agent_id': agent['id'], 'direction': 'outbound'})
    fake_db.failing_tables.add('calculator_history')

    resp = client.get('/api/admin/activity', headers=admin_headers)

    assert resp.status_code == 200
    assert [item['description'] for item in resp.get_json()['activities']] == ['Sent whatsapp message']


def test_activity_is_capped(client, admin_headers, fake_db):
    for table in ('conversation_logs', 'document_generations', 'calculator_history'):
        fake_db.seed(table, *[{'created_at': ago(minutes=i)} for i in range(12)])

    resp = client.get('/api/admin/activity', headers=admin_headers)
    assert len(resp.get_json()['activities']) == 20


@pytest.fixture
def analytics_rows(fake_db, agent):
    base = (datetime.now(timezone.utc) - timedelta(days=2)).replace(hour=9, minute=0, second=0, microsecond=0)
    other = fake_db.seed('agents', {'name': 'Andreas Kyprianou', 'status': 'active'})

    def at(**delta):
        return (base + timedelta(**delta)).isoformat()

    fake_db.seed(
        'conversation_logs',
        {'agent_id': agent['id'], 'created_at': at()},
        {'agent_id': agent['id'], 'created_at': at(minutes=1)},
        {'agent_id': other['id'], 'created_at': at(hours=2)},
        {'agent_id': other['id'], 'created_at': ago(days=40)},
    )
    fake_db.seed(
        'document_generations',
        {'template_filename': 'Reg_Banks.docx', 'created_at': at()},
        {'template_filename': 'Viewing Form', 'created_at': at(minutes=1)},
        {'template_filename': 'Reg_Banks.docx', 'created_at': at(minutes=2)},
    )
    fake_db.seed('calculators', {'id': 'calc-1', 'name': 'Transfer Fees'})
    fake_db.seed(
        'calculator_history',
        {'calculator_id': 'calc-1', 'created_at': at()},
        {'calculator_id': 'vat_calculator', 'created_at': at(minutes=1)},
    )
    return base


def test_analytics(client, admin_headers, analytics_rows):
    import pytz
    from config import Config

    resp = client.get('/api/admin/analytics', headers=admin_headers)

    body = resp.get_json()
    day = analytics_rows.date().isoformat()
    assert resp.status_code == 200
    assert body['messagesPerDay'] == [{'date': day, 'count': 3}]
    assert body['documentsPerDay'] == [{'date': day, 'count': 3}]
    assert body['calculatorsPerDay'] == [{'date': day, 'count': 2}]
    assert body['documentTypes'] == [{'name': 'Reg_Banks', 'value': 2}, {'name': 'Viewing Form', 'value': 1}]
    assert body['calculatorTypes'] == [{'name': 'Transfer Fees', 'value': 1}, {'name': 'vat_calculator', 'value': 1}]
    assert body['topAgents'] == [
        {'name': 'Eleni Georgiou', 'count': 2},
        {'name': 'Andreas Kyprianou', 'count': 1},
    ]
    assert body['peakHour'] == analytics_rows.astimezone(pytz.timezone(Config.TIMEZONE)).hour
    assert (body['totalMessages'], body['totalDocuments'], body['totalCalculators']) == (3, 3, 2)


def test_analytics_window(client, admin_headers, analytics_rows):
    body = client.get('/api/admin/analytics?days=1', headers=admin_headers).get_json()

    assert body['totalMessages'] == 0
    assert body['messagesPerDay'] == []
    assert body['topAgents'] == []
    assert body['peakHour'] == 0


@pytest.mark.parametrize('days', ['abc', '0', '400'])
def test_analytics_rejects_bad_days(client, admin_headers, days):
    resp = client.get(f'/api/admin/analytics?days={days}', headers=admin_headers)
    assert resp.status_code == 400


def test_analytics_requires_a_session(client):
    assert client.get('/api/admin/analytics').status_code == 401


def test_health_statuses(client, admin_headers, fake_db):
    fake_db.seed(
        'conversation_logs',
        {'direction': 'inbound', 'timestamp': ago(minutes=2)},
        {'direction': 'outbound', 'timestamp': ago(minutes=10)},
    )

    resp = client.get('/api/admin/health', headers=admin_headers)

    health = {item['service']: item for item in resp.get_json()['health']}
    assert health['Database']['status'] == 'online'
    assert health['Messaging Webhook']['status'] == 'online'
    assert health['Messaging Webhook']['message'] == 'Last message 2m ago'
    assert health['OpenAI API']['status'] == 'warning'
    assert health['OpenAI API']['message'] == 'Last response 10m ago'


def test_health_without_traffic(client, admin_headers):
    resp = client.get('/api/admin/health', headers=admin_headers)

    health = {item['service']: item for item in resp.get_json()['health']}
    assert health['Messaging Webhook'] == {
        'service': 'Messaging Webhook', 'status': 'offline', 'lastUpdate': None, 'message': 'No messages received',
    }
    assert health['OpenAI API']['message'] == 'No responses generated'


def test_health_database_down(client, admin_headers, fake_db):
    fake_db.failing_tables.add('agents')

    resp = client.get('/api/admin/health', headers=admin_headers)

    assert resp.status_code == 200
    assert resp.get_json()['health'] == [
        {'service': 'Database', 'status': 'offline', 'lastUpdate': None, 'message': 'Connection error'},
    ]


@pytest.fixture
def log_rows(fake_db, agent):
    return fake_db.seed(
        'conversation_logs',
        {'agent_id': agent['id'], 'direction': 'inbound', 'message_text': 'Transfer fees for 300k?',
         'created_at': '2025-06-01T10:00:00+00:00'},
        {'agent_id': agent['id'], 'direction': 'outbound', 'message_text': 'Sorry, "something" failed',
         'error_message': 'OpenAI timeout', 'created_at': '2025-06-02T10:00:00+00:00'},
        {'agent_id': None, 'direction': 'inbound', 'message_text': 'hello',
         'created_at': '2025-06-03T10:00:00+00:00'},
    )


def test_logs_list(client, admin_headers, log_rows):
    resp = client.get('/api/admin/logs', headers=admin_headers)

    body = resp.get_json()
    assert body['total'] == 3
    assert body['limit'] == 100
    assert body['offset'] == 0
    assert [entry['message'] for entry in body['logs']] == [
        'hello', 'Sorry, "something" failed', 'Transfer fees for 300k?',
    ]
    assert body['logs'][0]['agent_name'] == 'Unknown'
    assert body['logs'][1]['level'] == 'error'
    assert body['logs'][1]['agent_phone'] == '+35799123456'


def test_logs_filters(client, admin_headers, log_rows):
    errors = client.get('/api/admin/logs?level=error', headers=admin_headers).get_json()
    assert [entry['details'] for entry in errors['logs']] == ['OpenAI timeout']

    info = client.get('/api/admin/logs?level=info', headers=admin_headers).get_json()
    assert info['total'] == 2

    searched = client.get('/api/admin/logs?search=TRANSFER', headers=admin_headers).get_json()
    assert [entry['message'] for entry in searched['logs']] == ['Transfer fees for 300k?']

    ranged = client.get(
        '/api/admin/logs?startDate=2025-06-02T00:00:00&endDate=2025-06-02T23:59:59', headers=admin_headers,
    ).get_json()
    assert ranged['total'] == 1

    paged = client.get('/api/admin/logs?limit=1&offset=1', headers=admin_headers).get_json()
    assert paged['total'] == 3
    assert [entry['message'] for entry in paged['logs']] == ['Sorry, "something" failed']


def test_logs_csv_export(client, admin_headers, log_rows):
    resp = client.get('/api/admin/logs?format=csv&level=error', headers=admin_headers)

    assert resp.mimetype == 'text/csv'
    assert 'filename="sophia-logs-' in resp.headers['Content-Disposition']
    lines = resp.get_data(as_text=True).splitlines()
    assert lines[0] == 'Timestamp,Level,Agent,Phone,Direction,Message,Details'
    assert lines[1] == (
        '"2025-06-02T10:00:00+00:00","error","Eleni Georgiou","+35799123456","outbound",'
        '"Sorry, ""something"" failed","OpenAI timeout"'
    )


def test_logs_rejects_bad_limit(client, admin_headers):
    resp = client.get('/api/admin/logs?limit=lots', headers=admin_headers)
    assert resp.status_code == 400


@pytest.fixture
def config_rows(fake_db):
    return fake_db.seed(
        'system_config',
        {'key': 'openai_model', 'value': json.dumps('gpt-4o-mini'), 'description': 'Model'},
        {'key': 'max_conversation_history', 'value': json.dumps(10), 'description': 'History'},
    )


def test_get_config(client, admin_headers, config_rows):
    resp = client.get('/api/admin/config', headers=admin_headers)

    configs = resp.get_json()['configs']
    assert [(row['key'], row['value']) for row in configs] == [
        ('max_conversation_history', 10), ('openai_model', 'gpt-4o-mini'),
    ]


def test_patch_config(client, admin_headers, fake_db, config_rows):
    resp = client.patch('/api/admin/config', headers=admin_headers, json={'key': 'openai_model', 'value': 'gpt-4o'})

    assert resp.status_code == 200
    assert resp.get_json()['config']['value'] == 'gpt-4o'
    stored = next(row for row in fake_db.rows('system_config') if row['key'] == 'openai_model')
    assert json.loads(stored['value']) == 'gpt-4o'
    assert 'updated_by' not in stored


@pytest.mark.parametrize('payload, status, error', [
    ({'value': 'gpt-4o'}, 400, 'Config key is required'),
    ({'key': 'openai_model', 'value': 'gpt-2'}, 400, 'Invalid value for config key: openai_model'),
    ({'key': 'max_conversation_history', 'value': 500}, 400,
     'Invalid value for config key: max_conversation_history'),
    ({'key': 'unknown_key', 'value': 1}, 404, 'Config key not found: unknown_key'),
])
def test_patch_config_errors(client, admin_headers, config_rows, payload, status, error):
    resp = client.patch('/api/admin/config', headers=admin_headers, json=payload)

    assert resp.status_code == status
    assert resp.get_json()['error'] == error


def test_document_template_usage(client, admin_headers, fake_db):
    fake_db.seed(
        'document_generations',
        {'template_filename': 'Reg_Banks', 'created_at': '2025-06-01T10:00:00+00:00'},
        {'template_filename': 'Reg_Banks', 'created_at': '2025-06-03T10:00:00+00:00'},
        {'template_filename': 'Marketing_Agreement', 'created_at': '2025-06-02T10:00:00+00:00'},
        {'template_filename': None, 'created_at': '2025-05-01T10:00:00+00:00'},
    )

    resp = client.get('/api/admin/templates/documents', headers=admin_headers)

    templates = resp.get_json()['templates']
    assert templates[0] == {
        'template_filename': 'Reg_Banks', 'usage_count': 2, 'last_used': '2025-06-03T10:00:00+00:00',
    }
    assert {item['template_filename'] for item in templates[1:]} == {'Marketing_Agreement', 'unknown'}


class FakeChatbase:
    error = None

    def __init__(self):
        if isinstance(self.error, ChatbaseConfigError):
            raise self.error

    def generate_sophia_response(self, message, conversation_id=None):
        if self.error:
            raise self.error
        return {
            'text': f"Echo: {message}",
            'usage': {'total_tokens': 12},
            'finish_reason': 'stop',
            'conversation_id': conversation_id or 'conv-1',
        }


@pytest.fixture
def chatbase(monkeypatch):
    FakeChatbase.error = None
    monkeypatch.setattr(admin_routes, 'ChatbaseService', FakeChatbase)
    return FakeChatbase


def test_testing_console(client, admin_headers, chatbase):
    resp = client.post('/api/admin/testing', headers=admin_headers,
                       json={'message': '  transfer fees?  ', 'conversationId': 'conv-9'})

    assert resp.get_json() == {
        'success': True,
        'message': 'Echo: transfer fees?',
        'usage': {'total_tokens': 12},
        'finishReason': 'stop',
        'conversationId': 'conv-9',
    }


def test_testing_console_requires_message(client, admin_headers, chatbase):
    resp = client.post('/api/admin/testing', headers=admin_headers, json={'message': '   '})

    assert resp.status_code == 422
    assert resp.get_json()['error'] == 'Message is required'


def test_testing_console_unconfigured(client, admin_headers, chatbase):
    chatbase.error = ChatbaseConfigError('CHATBASE_AGENT_ID environment variable is not set')

    resp = client.post('/api/admin/testing', headers=admin_headers, json={'message': 'hi'})

    assert resp.status_code == 500
    assert 'CHATBASE_BOT_ID' in resp.get_json()['error']


def test_testing_console_upstream_error(client, admin_headers, chatbase):
    chatbase.error = ChatbaseError('Chatbase API error: 500 Internal Server Error')

    resp = client.post('/api/admin/testing', headers=admin_headers, json={'message': 'hi'})

    assert resp.status_code == 502
    assert resp.get_json() == {'success': False, 'error': 'Chatbase API error: 500 Internal Server Error'}
