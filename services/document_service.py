"""
Document templates: variable discovery, validation, rendering and delivery

Templates use {{variable}} placeholders and {{#if variable}}...{{/if}}
conditional sections.
"""
import json
import re
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from config import Config
from services.supabase_client import get_supabase
from utils.logger import get_logger, mask_phone
from utils.validators import EMAIL_REGEX

logger = get_logger(__name__)

WHATSAPP_MAX_LENGTH = 4096

VARIABLE_REGEX = re.compile(r'\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}')
CONDITIONAL_REGEX = re.compile(r'\{\{#if\s+([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}(.*?)\{\{/if\}\}', re.DOTALL)
PHONE_REGEX = re.compile(r'^\+?[\d\s\-()]{7,20}$')
URL_REGEX = re.compile(r'https?://[^\s,]+')

NUMBER_HINTS = (
    'price', 'amount', 'bedrooms', 'bathrooms', 'area', 'size', 'square', 'sqm',
    'fee', 'cost', 'value', 'commission', 'count', 'number', 'year',
)

BANK_MAPPINGS = {
    'remuproperties': 'Remu Team',
    'remu': 'Remu Team',
    'gordian': 'Gordian Team',
    'altia': 'Altia Team',
    'altamira': 'Altamira Team',
    'astrea': 'Astrea Team',
    'debtsale': 'Debt Sale Team',
}

DOCUMENT_PARSER_PROMPT = """You are a document request parser for real estate agents.
Extract the template name and variables from their WhatsApp messages.

Common template patterns:
- "reg_banks" or "registration banks" -> Reg_Banks.docx
- "reg_developers" -> Reg_Developers_.docx
- "viewing form" -> Email_For_Viewing_Form.docx
- "exclusive agreement" -> EXCLUSIVE AGREEMENT NEW_via_email.docx
- "marketing agreement" -> Marketing_Agreement.docx

Extract all details mentioned: names, phone numbers, property links, banks, etc.
Return JSON: {"template_name": "...", "variables": {...}}"""


class TemplateNotFoundError(LookupError):
    pass


class TemplateValidationError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__('Variable validation failed')
        self.errors = errors


class TemplateRenderError(RuntimeError):
    def __init__(self, errors: List[str]):
        super().__init__('Document rendering failed')
        self.errors = errors


def extract_template_variables(template: str) -> List[str]:
    """Placeholder names in order of first appearance"""
    names: List[str] = []
    for match in VARIABLE_REGEX.finditer(template or ''):
        name = match.group(1)
        if name not in names:
            names.append(name)
    return names


def _infer_type(name: str) -> str:
    lowered = name.lower()
    if 'email' in lowered:
        return 'email'
    if 'phone' in lowered or 'mobile' in lowered:
        return 'phone'
    if 'date' in lowered:
        return 'date'
    if any(hint in lowered for hint in NUMBER_HINTS):
        return 'number'
    return 'text'


def generate_variable_schema(template: str) -> List[Dict[str, Any]]:
    """Infer a variable definition for every placeholder in a template"""
    return [
        {
            'name': name,
            'type': _infer_type(name),
            'required': True,
            'label': name.replace('_', ' ').title(),
        }
        for name in extract_template_variables(template)
    ]


def template_schema(template: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Stored variable definitions of a template row, else ones derived from its content"""
    return template.get('variables') or generate_variable_schema(template.get('template_content') or '')


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == '')


def _default_of(variable: Dict[str, Any]) -> Any:
    if 'default_value' in variable:
        return variable['default_value']
    return variable.get('defaultValue')


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return parse_currency(value)
    return None


def validate_template_variables(variables: List[Dict[str, Any]], values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check provided values against template variable definitions

    Returns:
        Dict with valid, missing_variables, invalid_variables and errors
    """
    values = values or {}
    missing: List[str] = []
    invalid: List[Dict[str, Any]] = []
    errors: List[str] = []

    def reject(name, value, reason):
        invalid.append({'name': name, 'value': value, 'reason': reason})
        errors.append(f"{name}: {reason}")

    for variable in variables or []:
        name = variable['name']
        value = values.get(name)

        if _is_blank(value):
            if variable.get('required') and _is_blank(_default_of(variable)):
                missing.append(name)
                errors.append(f"{variable.get('label') or name} is required")
            continue

        var_type = variable.get('type', 'text')
        validation = variable.get('validation') or {}

        if var_type == 'number':
            number = _to_number(value)
            if number is None:
                reject(name, value, 'Must be a valid number')
                continue
            if validation.get('min') is not None and number < validation['min']:
                reject(name, value, f"Must be at least {validation['min']}")
            if validation.get('max') is not None and number > validation['max']:
                reject(name, value, f"Must be at most {validation['max']}")
        elif var_type == 'email':
            if not isinstance(value, str) or not EMAIL_REGEX.match(value.strip()):
                reject(name, value, 'Must be a valid email address')
        elif var_type == 'phone':
            digits = re.sub(r'\D', '', str(value))
            if not PHONE_REGEX.match(str(value).strip()) or len(digits) < 7:
                reject(name, value, 'Must be a valid phone number')

        options = validation.get('options')
        if options and value not in options:
            reject(name, value, f"Must be one of: {', '.join(map(str, options))}")

        pattern = validation.get('pattern')
        if pattern and not re.search(pattern, str(value)):
            reject(name, value, 'Invalid format')

    return {
        'valid': not missing and not invalid,
        'missing_variables': missing,
        'invalid_variables': invalid,
        'errors': errors,
    }


def _format_value(value: Any, var_type: Optional[str]) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'Yes' if value else 'No'
    if isinstance(value, (int, float)):
        if value == int(value):
            return f"{int(value):,}"
        return f"{value:,.2f}"
    if var_type == 'number' and isinstance(value, str):
        number = parse_currency(value)
        if number is not None:
            return _format_value(number, None)
    return str(value)


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ('', 'false', 'no', '0')
    return bool(value)


def render_template(template: str, variables: List[Dict[str, Any]], values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill a template with values

    Returns:
        Dict with success, content, errors and warnings
    """
    errors: List[str] = []
    warnings: List[str] = []

    try:
        merged = dict(values or {})
        types = {}
        for variable in variables or []:
            types[variable['name']] = variable.get('type')
            if _is_blank(merged.get(variable['name'])):
                default = _default_of(variable)
                if default is not None:
                    merged[variable['name']] = default
                elif variable.get('required'):
                    warnings.append(f"No value provided for {variable['name']}")

        content = CONDITIONAL_REGEX.sub(
            lambda m: m.group(2) if _is_truthy(merged.get(m.group(1))) else '',
            template or '',
        )

        content = VARIABLE_REGEX.sub(
            lambda m: _format_value(merged.get(m.group(1)), types.get(m.group(1))),
            content,
        )

        content = re.sub(r'\n{3,}', '\n\n', content).strip()
    except (TypeError, re.error) as e:
        logger.error(f"Template rendering failed: {e}")
        errors.append(str(e))
        return {'success': False, 'content': None, 'errors': errors, 'warnings': warnings}

    return {'success': True, 'content': content, 'errors': errors, 'warnings': warnings}


def split_for_whatsapp(content: str, max_length: int = WHATSAPP_MAX_LENGTH) -> List[str]:
    """Split by paragraph, then by word, then hard-cut words longer than max_length"""
    if len(content) <= max_length:
        return [content]

    chunks: List[str] = []
    current = ''

    def flush():
        if current.strip():
            chunks.append(current.strip())
        return ''

    for paragraph in content.split('\n\n'):
        joined = f"{current}\n\n{paragraph}" if current else paragraph
        if len(joined) <= max_length:
            current = joined
            continue

        current = flush()
        if len(paragraph) <= max_length:
            current = paragraph
            continue

        for word in paragraph.split(' '):
            while len(word) > max_length:
                current = flush()
                chunks.append(word[:max_length])
                word = word[max_length:]
            joined = f"{current} {word}" if current else word
            if len(joined) > max_length:
                current = flush()
                current = word
            else:
                current = joined

    flush()
    return chunks


def parse_currency(text: str) -> Optional[float]:
    """'500k' -> 500000, '€1,500,000' -> 1500000, '1.5m' -> 1500000"""
    if text is None:
        return None
    cleaned = re.sub(r'[€$£,\s]', '', str(text))
    multiplier = 1
    if cleaned[-1:].lower() == 'k':
        multiplier, cleaned = 1000, cleaned[:-1]
    elif cleaned[-1:].lower() == 'm':
        multiplier, cleaned = 1000000, cleaned[:-1]

    match = re.match(r'^[+-]?(\d+(\.\d*)?|\.\d+)', cleaned)
    if not match:
        return None
    return float(match.group(0)) * multiplier


def parse_percentage(text: str) -> Optional[float]:
    """'4%' and '4' -> 0.04; values below 1 are already decimals"""
    if text is None:
        return None
    cleaned = re.sub(r'[%\s]', '', str(text))
    match = re.match(r'^[+-]?(\d+(\.\d*)?|\.\d+)', cleaned)
    if not match:
        return None
    value = float(match.group(0))
    return value if value < 1 else value / 100


def mask_phone_number(phone: str) -> str:
    """'99 07 67 32' -> '99 ** 67 32', '+357 99 07 67 32' -> '+357 99 ** 67 32'"""
    if not phone:
        return phone
    cleaned = re.sub(r'[^\d+]', '', phone)

    if cleaned.startswith('+357'):
        digits = cleaned[4:]
        if len(digits) == 8:
            return f"+357 {digits[:2]} ** {digits[4:6]} {digits[6:]}"
    elif len(cleaned) == 8:
        return f"{cleaned[:2]} ** {cleaned[4:6]} {cleaned[6:]}"

    if len(cleaned) >= 10:
        return f"{cleaned[:4]} ** {cleaned[-4:]}"

    return phone


def extract_property_links(message: str) -> List[str]:
    return URL_REGEX.findall(message or '')


def detect_bank_from_link(link: str) -> Optional[str]:
    """Bank team name for a listing URL, e.g. remuproperties.com -> Remu Team"""
    if not link:
        return None
    lowered = link.lower()
    for key, team in BANK_MAPPINGS.items():
        if key in lowered:
            return team
    return None


def format_property_links(links: List[str]) -> str:
    if not links:
        return ''
    if len(links) == 1:
        return links[0]
    return '\n'.join(f"Property {index}: {link}" for index, link in enumerate(links, start=1))


class DocumentService:
    """Natural-language document requests and template delivery over WhatsApp"""

    def __init__(self, openai_service=None, whatsapp_service=None):
        self._openai_service = openai_service
        self._whatsapp_service = whatsapp_service

    @property
    def openai_service(self):
        if self._openai_service is None:
            from services.openai_service import openai_service
            self._openai_service = openai_service
        return self._openai_service

    @property
    def whatsapp_service(self):
        if self._whatsapp_service is None:
            from services.whatsapp_service import whatsapp_service
            self._whatsapp_service = whatsapp_service
        return self._whatsapp_service

    def parse_document_request(self, message: str) -> Optional[Dict[str, Any]]:
        """
        Extract a template name and variables from an agent's message

        Example: "Sophia, I want reg_banks with Fawzi Goussous, Bank of Cyprus, link https://..."

        Returns:
            Dict with template_name, variables and raw_message, or None
        """
        try:
            completion = self.openai_service.client.chat.completions.create(
                model=Config.OPENAI_MODEL,
                messages=[
                    {'role': 'system', 'content': DOCUMENT_PARSER_PROMPT},
                    {'role': 'user', 'content': message},
                ],
                response_format={'type': 'json_object'},
                temperature=0.3,
            )
            result = json.loads(completion.choices[0].message.content or '{}')
        except Exception as e:
            logger.error(f"Failed to parse document request: {e}")
            return None

        if not result.get('template_name'):
            return None

        return {
            'template_name': result['template_name'],
            'variables': result.get('variables') or {},
            'raw_message': message,
        }

    def _find_agent_id(self, phone_number: str) -> Optional[str]:
        resp = (
            get_supabase().table('agents')
            .select('id')
            .eq('phone_number', phone_number)
            .limit(1)
            .execute()
        )
        return resp.data[0]['id'] if resp.data else None

    def generate_and_deliver(self, template_id: str, values: Dict[str, Any], phone_number: str) -> Dict[str, Any]:
        """
        Render an active template and send it to an agent over WhatsApp

        Raises:
            TemplateNotFoundError: Template missing or inactive
            TemplateValidationError: Values do not satisfy the template variables
            TemplateRenderError: Rendering failed
        """
        supabase = get_supabase()

        resp = (
            supabase.table('document_templates')
            .select('*')
            .eq('id', template_id)
            .eq('status', 'active')
            .limit(1)
            .execute()
        )
        if not resp.data:
            raise TemplateNotFoundError(template_id)
        template = resp.data[0]
        template_variables = template_schema(template)

        validation = validate_template_variables(template_variables, values)
        if not validation['valid']:
            raise TemplateValidationError(validation['errors'])

        rendered = render_template(template.get('template_content') or '', template_variables, values)
        if not rendered['success']:
            raise TemplateRenderError(rendered['errors'])

        generation = None
        try:
            log_resp = supabase.table('document_generations').insert({
                'template_id': template_id,
                'template_filename': template.get('name'),
                'agent_id': self._find_agent_id(phone_number),
                'variables_used': values,
                'generated_content': rendered['content'],
                'delivery_method': 'whatsapp',
                'delivery_status': 'pending',
            }).execute()
            generation = log_resp.data[0] if log_resp.data else None
        except Exception as e:
            logger.error(f"Failed to log document generation: {e}")

        chunks = split_for_whatsapp(rendered['content'])
        delivery_results = []
        for index, chunk in enumerate(chunks):
            text = f"📄 **{template['name']}**\n\n{chunk}" if index == 0 else chunk
            result = self.whatsapp_service.send_message(phone_number, text)
            entry = {'chunk': index + 1, 'success': result['success']}
            if not result['success']:
                entry['error'] = result.get('error')
            delivery_results.append(entry)

        all_delivered = all(r['success'] for r in delivery_results)

        if generation:
            supabase.table('document_generations').update({
                'delivery_status': 'delivered' if all_delivered else 'failed',
                'delivered_at': datetime.now(timezone.utc).isoformat() if all_delivered else None,
            }).eq('id', generation['id']).execute()

        logger.info(
            f"Document {template['name']} sent to {mask_phone(phone_number)} "
            f"in {len(chunks)} chunk(s), delivered={all_delivered}"
        )

        return {
            'success': True,
            'generation_id': generation['id'] if generation else None,
            'template_name': template['name'],
            'chunks_sent': len(chunks),
            'delivery_results': delivery_results,
            'all_delivered': all_delivered,
            'warnings': rendered['warnings'],
        }


# Create a singleton instance
document_service = DocumentService()
