"""
Admin calculator management and execution handlers
"""
from collections import Counter
from datetime import datetime, timezone

from flask import Blueprint, g, jsonify

from services.calculator_service import calculator_service
from services.supabase_client import get_supabase, is_unique_violation
from utils.auth import require_admin
from utils.errors import BadRequest, Conflict, NotFound, handle_api_errors
from utils.logger import get_logger
from utils.validators import get_json_body

logger = get_logger(__name__)

calculators_bp = Blueprint('calculators', __name__, url_prefix='/api/admin/calculators')

CALCULATOR_COLUMNS = 'id, name, tool_url, description, input_fields, is_active, created_at, updated_at'
EDITABLE_FIELDS = ('name', 'description', 'input_fields', 'is_active', 'tool_url')


def _usage_for(calculator, usage: Counter) -> int:
    """History rows reference a calculator by id or, for built-ins, by name"""
    count = usage.get(calculator['id'], 0)
    if calculator.get('name') and calculator['name'] != calculator['id']:
        count += usage.get(calculator['name'], 0)
    return count


@calculators_bp.route('', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch calculators')
def list_calculators():
    """Calculators ordered by name, each with its usage_count"""
    supabase = get_supabase()
    calculators = supabase.table('calculators').select(CALCULATOR_COLUMNS).order('name').execute().data or []

    try:
        history = supabase.table('calculator_history').select('calculator_id').execute().data or []
        usage = Counter(row.get('calculator_id') for row in history)
    except Exception as e:
        logger.error(f"Failed to load calculator usage: {e}")
        usage = Counter()

    return jsonify({
        'success': True,
        'calculators': [
            {**calc, 'usage_count': _usage_for(calc, usage)}
            for calc in calculators
        ],
    })


@calculators_bp.route('', methods=['POST'])
@require_admin
@handle_api_errors('Failed to create calculator')
def create_calculator():
    data = get_json_body()
    name = data.get('name')
    if not name:
        raise BadRequest('Calculator name is required')

    try:
        resp = get_supabase().table('calculators').insert({
            'name': name,
            'tool_url': data.get('tool_url'),
            'description': data.get('description'),
            'input_fields': data.get('input_fields') or [],
            'is_active': data.get('is_active', True),
        }).execute()
    except Exception as e:
        if is_unique_violation(e):
            raise Conflict(f"A calculator named {name} already exists")
        raise

    logger.info(f"Calculator {name} created")
    return jsonify({'success': True, 'calculator': resp.data[0] if resp.data else None}), 201


@calculators_bp.route('/<calculator_id>', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch calculator')
def get_calculator(calculator_id):
    resp = get_supabase().table('calculators').select('*').eq('id', calculator_id).limit(1).execute()
    if not resp.data:
        raise NotFound('Calculator not found')
    return jsonify({'success': True, 'calculator': resp.data[0]})


@calculators_bp.route('/<calculator_id>', methods=['PATCH'])
@require_admin
@handle_api_errors('Failed to update calculator')
def update_calculator(calculator_id):
    data = get_json_body()

    updates = {field: data[field] for field in EDITABLE_FIELDS if field in data}
    updates['updated_at'] = datetime.now(timezone.utc).isoformat()

    resp = get_supabase().table('calculators').update(updates).eq('id', calculator_id).execute()
    if not resp.data:
        raise NotFound('Calculator not found')

    logger.info(f"Calculator {calculator_id} updated")
    return jsonify({'success': True, 'calculator': resp.data[0]})


@calculators_bp.route('/execute', methods=['POST'])
@require_admin
@handle_api_errors('Failed to execute calculator')
def execute_calculator():
    """Run a calculator from the admin console and record successful runs"""
    data = get_json_body()
    calculator_name = data.get('calculator_name')
    inputs = data.get('inputs')

    if not calculator_name or not inputs:
        raise BadRequest('Missing calculator_name or inputs')

    result = calculator_service.execute_calculator(calculator_name, inputs)

    if result['success']:
        try:
            get_supabase().table('calculator_history').insert({
                'calculator_id': calculator_name,
                'user_id': g.admin['sub'],
                'inputs': inputs,
                'result': result['result'],
                'success': True,
            }).execute()
        except Exception as e:
            logger.error(f"Error saving calculator history: {e}")

    return jsonify(result)
