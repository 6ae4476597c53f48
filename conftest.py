"""
Shared pytest fixtures: an in-memory Supabase stand-in, the Flask test
client, admin credentials and fakes for the outbound messaging services.
"""
import copy
import uuid
from datetime import datetime, timezone

import pytest

import services.supabase_client as supabase_client
from services.flow_performance_service import flow_performance_service
from services.metrics_service import metrics_service
from services.system_config_service import invalidate_config_cache
from utils.auth import ACCESS_CODE_USER, create_session_token

ADMIN_ACCESS_CODE = 'test-access-code'
TELEGRAM_SECRET = 'test-telegram-secret'

# Columns the real schema declares unique
UNIQUE_COLUMNS = {
    'agents': ('email', 'phone_number'),
    'conversation_logs': ('message_id',),
    'calculators': ('name',),
    'system_config': ('key',),
    'telegram_users': ('telegram_user_id',),
}


class FakeAPIError(Exception):
    """Mimics postgrest.APIError, which carries the Postgres error code"""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        self.code = code


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


def _like(value, pattern):
    if value is None:
        return False
    needle = pattern.strip('%').lower()
    return needle in str(value).lower()


class FakeQuery:
    """Chainable subset of the supabase-py query builder"""

    def __init__(self, db, table):
        self.db = db
        self.table_name = table
        self.operation = 'select'
        self.payload = None
        self.count_mode = None
        self.filters = []
        self.orders = []
        self.limit_value = None
        self.range_value = None
        self._negate = False

    # Operations

    def select(self, columns='*', count=None):
        self.operation = 'select'
        self.count_mode = count
        return self

    def insert(self, rows):
        self.operation = 'insert'
        self.payload = rows
        return self

    def update(self, values):
        self.operation = 'update'
        self.payload = values
        return self

    def delete(self):
        self.operation = 'delete'
        return self

    # Filters

    def _add(self, predicate):
        if self._negate:
            self._negate = False
            self.filters.append(lambda row: not predicate(row))
        else:
            self.filters.append(predicate)
        return self

    @property
    def not_(self):
        self._negate = True
        return self

    def eq(self, column, value):
        return self._add(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._add(lambda row: row.get(column) != value)

    def gte(self, column, value):
        return self._add(lambda row: row.get(column) is not None and str(row[column]) >= str(value))

    def lte(self, column, value):
        return self._add(lambda row: row.get(column) is not None and str(row[column]) <= str(value))

    def in_(self, column, values):
        values = list(values)
        return self._add(lambda row: row.get(column) in values)

    def is_(self, column, value):
        if value in ('null', None):
            return self._add(lambda row: row.get(column) is None)
        return self._add(lambda row: row.get(column) == value)

    def or_(self, expression):
        clauses = []
        for clause in expression.split(','):
            column, operator, value = clause.split('.', 2)
            clauses.append((column, operator, value))

        def predicate(row):
            for column, operator, value in clauses:
                if operator == 'ilike' and _like(row.get(column), value):
                    return True
                if operator == 'eq' and str(row.get(column)) == value:
                    return True
            return False

        return self._add(predicate)

    # Modifiers

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def limit(self, count):
        self.limit_value = count
        return self

    def range(self, start, end):
        self.range_value = (start, end)
        return self

    # Execution

    def _matching(self):
        return [row for row in self.db.tables.setdefault(self.table_name, [])
                if all(predicate(row) for predicate in self.filters)]

    def execute(self):
        if self.table_name in self.db.failing_tables:
            raise FakeAPIError(f"relation {self.table_name} is unavailable")

        self.db.calls.append((self.table_name, self.operation))

        if self.operation == 'insert':
            return FakeResponse(self._insert())

        if self.operation == 'update':
            rows = self._matching()
            for row in rows:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse(copy.deepcopy(rows))

        if self.operation == 'delete':
            rows = self._matching()
            table = self.db.tables[self.table_name]
            self.db.tables[self.table_name] = [row for row in table if row not in rows]
            return FakeResponse(copy.deepcopy(rows))

        rows = self._matching()
        for column, desc in reversed(self.orders):
            rows.sort(key=lambda row: (row.get(column) is None, str(row.get(column) or '')), reverse=desc)
        total = len(rows)
        if self.range_value:
            start, end = self.range_value
            rows = rows[start:end + 1]
        if self.limit_value is not None:
            rows = rows[:self.limit_value]
        return FakeResponse(copy.deepcopy(rows), total if self.count_mode else None)

    def _insert(self):
        rows = self.payload if isinstance(self.payload, list) else [self.payload]
        table = self.db.tables.setdefault(self.table_name, [])
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            for column in UNIQUE_COLUMNS.get(self.table_name, ()):
                if row.get(column) is not None and any(existing.get(column) == row[column] for existing in table):
                    raise FakeAPIError(
                        f'duplicate key value violates unique constraint "{self.table_name}_{column}_key"',
                        code='23505',
                    )
            row.setdefault('id', str(uuid.uuid4()))
            row.setdefault('created_at', datetime.now(timezone.utc).isoformat())
            table.append(row)
            inserted.append(copy.deepcopy(row))
        return inserted


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.failing_tables = set()
        self.calls = []

    def table(self, name):
        return FakeQuery(self, name)

    def seed(self, table, *rows):
        stored = []
        for row in rows:
            row = dict(row)
            row.setdefault('id', str(uuid.uuid4()))
            row.setdefault('created_at', datetime.now(timezone.utc).isoformat())
            self.tables.setdefault(table, []).append(row)
            stored.append(row)
        return stored[0] if len(stored) == 1 else stored

    def rows(self, table):
        return self.tables.get(table, [])


class FakeWhatsApp:
    def __init__(self, success=True, error=None):
        self.success = success
        self.error = error
        self.sent = []

    def send_message(self, phone_number, message_text, agent_id=None):
        self.sent.append({'to': phone_number, 'text': message_text, 'agent_id': agent_id})
        return {
            'success': self.success,
            'message_id': f"SM{len(self.sent):032d}" if self.success else None,
            'error': None if self.success else (self.error or 'Failed to send message'),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }


class FakeTelegram:
    def __init__(self):
        self.sent = []

    def send_message(self, chat_id, text, **options):
        self.sent.append({'chat_id': chat_id, 'text': text, **options})
        return {'message_id': len(self.sent)}

    @property
    def texts(self):
        return [message['text'] for message in self.sent]


class FakeOpenAI:
    def __init__(self, text='Hello from Sophia', tool_calls=None):
        self.text = text
        self.tool_calls = tool_calls or []
        self.calls = []

    def generate_response(self, message, context=None):
        self.calls.append({'message': message, 'context': context or {}})
        return {
            'text': self.text,
            'tokens_used': {'prompt': 10, 'completion': 5, 'total': 15},
            'cost_estimate': 0.0001,
            'response_time': 12,
            'tool_calls': list(self.tool_calls),
        }


@pytest.fixture(autouse=True)
def fake_db(monkeypatch):
    """Every test runs against a fresh in-memory database"""
    db = FakeSupabase()
    monkeypatch.setattr(supabase_client, '_supabase_client', db)
    invalidate_config_cache()
    metrics_service.reset()
    flow_performance_service._metrics_cache.clear()
    yield db
    invalidate_config_cache()


@pytest.fixture
def app():
    from app import create_app

    flask_app = create_app('testing')
    flask_app.config.update(
        ADMIN_ACCESS_CODE=ADMIN_ACCESS_CODE,
        TELEGRAM_WEBHOOK_SECRET=TELEGRAM_SECRET,
        PROCESS_WEBHOOKS_INLINE=True,
    )
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    token = create_session_token(ACCESS_CODE_USER, source='access_code')
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def fake_whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def fake_telegram():
    return FakeTelegram()


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def router_fakes(monkeypatch, fake_whatsapp, fake_telegram, fake_openai):
    """Swap the shared message router's outbound services for fakes"""
    from services.message_forward_service import MessageForwardService
    from services.message_router import message_router
    from services.rate_limiter import RateLimiterService

    monkeypatch.setattr(message_router, 'whatsapp', fake_whatsapp)
    monkeypatch.setattr(message_router, 'telegram', fake_telegram)
    monkeypatch.setattr(message_router, 'openai', fake_openai)
    monkeypatch.setattr(message_router, 'forwarder', MessageForwardService(whatsapp_service=fake_whatsapp))
    monkeypatch.setattr(message_router, '_rate_limiter', RateLimiterService(30, 60000, namespace='test'))
    return message_router
