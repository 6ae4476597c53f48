"""
OpenAI chat completions for Sophia's replies
"""
import json
import re
import time
from typing import Dict, Any, List, Optional

import openai
from openai import OpenAI

from config import Config
from services.calculator_service import CALCULATOR_CATALOG
from utils.logger import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are Sophia, an AI assistant for zyprus.com, a real estate company in Cyprus. You help real estate agents with their daily tasks by providing quick, accurate assistance.

Your capabilities:
- Generate professional documents (contracts, marketing materials, legal forms)
- Manage property listings (create, update, upload to zyprus.com)
- Perform real estate calculations (transfer fees, capital gains tax, VAT)
- Send and manage emails for client communications

Your communication style:
- Friendly and professional
- Concise and clear (2-3 sentences for simple queries)
- Helpful and proactive
- Focused on solving agent problems quickly

When an agent asks for a calculation and you have every required input, call the calculate tool. If inputs are missing, ask for them.

When an agent greets you (hello, hi, hey), respond with: "Hi! I'm Sophia, your zyprus.com AI assistant. I can help with documents, listings, calculations, and emails. What can I assist you with today?\""""

FALLBACK_REPLY = "I'm having trouble processing your request right now. Please try again in a moment."

# gpt-4o-mini pricing, USD per 1M tokens
INPUT_PER_1M = 0.15
OUTPUT_PER_1M = 0.60

GREETING_REGEX = re.compile(
    r'\b(hello|hi|hey|good morning|good afternoon|good evening|greetings)\b', re.IGNORECASE
)
CALCULATION_KEYWORDS = (
    'calculate', 'calculation', 'transfer fee', 'capital gain', 'vat', 'tax', 'how much',
)
DOCUMENT_KEYWORDS = (
    'document', 'template', 'contract', 'agreement', 'form', 'reg_banks', 'registration', 'marketing',
)

CALCULATOR_TOOL = {
    'type': 'function',
    'function': {
        'name': 'calculate',
        'description': 'Run a Cyprus real estate calculator. ' + ' '.join(
            f"{item['name']}: {item['description']} (requires {', '.join(item['required_inputs'])})."
            for item in CALCULATOR_CATALOG
        ),
        'parameters': {
            'type': 'object',
            'properties': {
                'calculator_name': {
                    'type': 'string',
                    'enum': [item['name'] for item in CALCULATOR_CATALOG],
                },
                'inputs': {
                    'type': 'object',
                    'description': 'Calculator inputs keyed by field name',
                },
            },
            'required': ['calculator_name', 'inputs'],
        },
    },
}


def calculate_cost(prompt_tokens: int, completion_tokens: int) -> float:
    """Estimated cost in USD"""
    return (prompt_tokens / 1_000_000) * INPUT_PER_1M + (completion_tokens / 1_000_000) * OUTPUT_PER_1M


def is_greeting(message: str) -> bool:
    return bool(GREETING_REGEX.search(message or ''))


class OpenAIService:
    """Generates Sophia's replies with the OpenAI chat completions API"""

    def __init__(self, client: Optional[OpenAI] = None):
        self._client = client
        self.model = Config.OPENAI_MODEL
        self.temperature = 0.7
        self.max_tokens = 500
        self.timeout = Config.OPENAI_TIMEOUT

    @property
    def client(self) -> OpenAI:
        """Lazy-init OpenAI client"""
        if self._client is None:
            if not Config.OPENAI_API_KEY:
                raise RuntimeError('OPENAI_API_KEY environment variable is not set')
            self._client = OpenAI(api_key=Config.OPENAI_API_KEY, timeout=self.timeout)
        return self._client

    def get_config(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'temperature': self.temperature,
            'max_tokens': self.max_tokens,
            'timeout': self.timeout,
        }

    def generate_response(self, message: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Generate a reply for an agent's message

        Args:
            message: The agent's message text
            context: Optional agent_id, message_history [{role, content}],
                     model override and enable_tools flag

        Returns:
            Dict with text, tokens_used, cost_estimate, response_time (ms) and tool_calls
        """
        context = context or {}
        started = time.time()

        messages: List[Dict[str, str]] = [{'role': 'system', 'content': SYSTEM_PROMPT}]
        for item in context.get('message_history') or []:
            messages.append({'role': item['role'], 'content': item['content']})
        messages.append({'role': 'user', 'content': message})

        request = {
            'model': context.get('model') or self.model,
            'messages': messages,
            'temperature': self.temperature,
            'max_tokens': self.max_tokens,
        }
        if context.get('enable_tools', True):
            request['tools'] = [CALCULATOR_TOOL]

        try:
            response = self.client.chat.completions.create(**request)
        except Exception as e:
            return self._handle_error(e, int((time.time() - started) * 1000))

        response_time = int((time.time() - started) * 1000)
        choice = response.choices[0].message if response.choices else None
        usage = response.usage

        tokens_used = {
            'prompt': getattr(usage, 'prompt_tokens', 0) or 0,
            'completion': getattr(usage, 'completion_tokens', 0) or 0,
            'total': getattr(usage, 'total_tokens', 0) or 0,
        }
        cost_estimate = calculate_cost(tokens_used['prompt'], tokens_used['completion'])

        tool_calls = []
        for call in (getattr(choice, 'tool_calls', None) or []):
            try:
                arguments = json.loads(call.function.arguments or '{}')
            except ValueError:
                logger.warning(f"Ignoring tool call with malformed arguments: {call.function.arguments}")
                continue
            tool_calls.append({'id': call.id, 'name': call.function.name, 'arguments': arguments})

        logger.info(
            f"Response generated for agent {context.get('agent_id')}: "
            f"tokens={tokens_used['total']}, cost=${cost_estimate:.6f}, time={response_time}ms, "
            f"tool_calls={len(tool_calls)}"
        )

        return {
            'text': (choice.content if choice else '') or '',
            'tokens_used': tokens_used,
            'cost_estimate': cost_estimate,
            'response_time': response_time,
            'tool_calls': tool_calls,
        }

    def classify_intent(self, message: str) -> str:
        """greeting, calculation, document_generation or unknown"""
        if is_greeting(message):
            return 'greeting'
        lowered = (message or '').lower()
        if any(keyword in lowered for keyword in CALCULATION_KEYWORDS):
            return 'calculation'
        if any(keyword in lowered for keyword in DOCUMENT_KEYWORDS):
            return 'document_generation'
        return 'unknown'

    def _handle_error(self, error: Exception, response_time: int) -> Dict[str, Any]:
        if isinstance(error, openai.AuthenticationError):
            error_type = 'authentication_error'
        elif isinstance(error, openai.RateLimitError):
            error_type = 'rate_limit_error'
        elif isinstance(error, openai.BadRequestError):
            error_type = 'invalid_request_error'
        elif isinstance(error, openai.APITimeoutError):
            error_type = 'timeout_error'
        elif isinstance(error, openai.APIError):
            error_type = 'api_error'
        else:
            error_type = 'unknown'

        logger.error(f"OpenAI {error_type} after {response_time}ms: {error}")

        return {
            'text': FALLBACK_REPLY,
            'tokens_used': {'prompt': 0, 'completion': 0, 'total': 0},
            'cost_estimate': 0,
            'response_time': response_time,
            'tool_calls': [],
            'error_type': error_type,
        }


# Create a singleton instance
openai_service = OpenAIService()
