"""
OpenRouter Client
Chat completions across hosted models, with cost estimation and a one-shot fallback model.
"""
import math
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from core.config import OPENROUTER_API_KEY, SITE_URL, SITE_NAME
from typing import Dict, List, Optional, Any
import logging

# Cost in USD per 1M tokens
OPENROUTER_MODELS = {
    'openai/gpt-5.1': {'name': 'GPT-5.1', 'input_cost': 10, 'output_cost': 30, 'context_window': 256000},
    'anthropic/claude-sonnet-4.5': {'name': 'Claude Sonnet 4.5', 'input_cost': 8, 'output_cost': 24,
                                    'context_window': 200000},
    'anthropic/claude-3-haiku': {'name': 'Claude 3 Haiku', 'input_cost': 0.25, 'output_cost': 1.25,
                                 'context_window': 200000},
    'anthropic/claude-3.5-sonnet': {'name': 'Claude 3.5 Sonnet', 'input_cost': 3, 'output_cost': 15,
                                    'context_window': 200000},
    'openai/gpt-4o': {'name': 'GPT-4o', 'input_cost': 5, 'output_cost': 15, 'context_window': 128000},
    'openai/gpt-4o-mini': {'name': 'GPT-4o Mini', 'input_cost': 0.15, 'output_cost': 0.6,
                           'context_window': 128000},
    'mistralai/mixtral-8x7b-instruct': {'name': 'Mixtral 8x7B', 'input_cost': 0.24, 'output_cost': 0.24,
                                        'context_window': 32768},
    'meta-llama/llama-3.1-70b-instruct': {'name': 'Llama 3.1 70B', 'input_cost': 0.59, 'output_cost': 0.79,
                                          'context_window': 131072},
    'meta-llama/llama-3.1-8b-instruct': {'name': 'Llama 3.1 8B', 'input_cost': 0.055, 'output_cost': 0.055,
                                         'context_window': 131072},
}

DEFAULT_MODEL = 'anthropic/claude-sonnet-4.5'
FALLBACK_MODEL = 'openai/gpt-4o'


class OpenRouterError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.retryable = retryable


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or '') / 4)


def estimate_message_tokens(messages: List[Dict[str, str]]) -> int:
    # 4 tokens of role framing per message, 3 to prime the reply
    return sum(4 + estimate_tokens(m.get('content', '')) for m in messages) + 3


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    info = OPENROUTER_MODELS.get(model)
    if not info:
        return 0.0
    return (input_tokens / 1_000_000) * info['input_cost'] + (output_tokens / 1_000_000) * info['output_cost']


def model_display_name(model: str) -> str:
    info = OPENROUTER_MODELS.get(model)
    return info['name'] if info else model.split('/')[-1]


class OpenRouterClient:
    """Thin OpenRouter wrapper; every completed call is written to api_cost_log."""

    def __init__(self, api_key: str = None, site_url: str = SITE_URL, site_name: str = SITE_NAME):
        self.api_key = OPENROUTER_API_KEY if api_key is None else api_key
        self.base_url = "https://openrouter.ai/api/v1"
        self.site_url = site_url
        self.site_name = site_name
        self.logger = logging.getLogger(__name__)
        self._db = None
        self.session = self._create_session()

    @property
    def db(self):
        if self._db is None:
            from core.database import db
            self._db = db
        return self._db

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        # Gateway hiccups only; 429 and 500 surface to the caller for fallback
        retry_strategy = Retry(
            total=2,
            backoff_factor=1,
            status_forcelist=[502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=10, pool_maxsize=20)
        session.mount("https://", adapter)
        return session

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
            'HTTP-Referer': self.site_url or '',
            'X-Title': self.site_name or '',
        }

    def chat_completion(self, messages: List[Dict[str, str]], model: str = DEFAULT_MODEL,
                        max_tokens: int = 2048, temperature: float = 0.7, top_p: float = 1,
                        stop: Optional[List[str]] = None, user_id: Optional[int] = None) -> Dict[str, Any]:
        if not self.is_configured():
            raise OpenRouterError('OPENROUTER_API_KEY is not configured', 401)

        body = {
            'model': model,
            'messages': messages,
            'max_tokens': max_tokens or 2048,
            'temperature': temperature,
            'top_p': top_p,
            'stream': False,
        }
        if stop:
            body['stop'] = stop

        try:
            response = self.session.post(f"{self.base_url}/chat/completions",
                                         headers=self._headers(), json=body, timeout=60)
        except requests.RequestException as e:
            raise OpenRouterError(str(e) or 'Unknown error', retryable=True)

        if not response.ok:
            try:
                error = response.json().get('error') or {}
            except ValueError:
                error = {}
            status = response.status_code
            raise OpenRouterError(
                error.get('message') or f'API request failed: {status}',
                status,
                error.get('code'),
                retryable=status >= 500 or status == 429,
            )

        data = response.json()
        choice = (data.get('choices') or [{}])[0]
        usage = data.get('usage') or {}
        prompt_tokens = usage.get('prompt_tokens') or 0
        completion_tokens = usage.get('completion_tokens') or 0
        used_model = data.get('model') or model

        cost = estimate_cost(model, prompt_tokens, completion_tokens)
        self.db.log_api_cost('openrouter', used_model, prompt_tokens, completion_tokens, cost, user_id)
        self.logger.info(f"OpenRouter {used_model}: {prompt_tokens}+{completion_tokens} tokens (${cost:.4f})")

        return {
            'id': data.get('id'),
            'model': used_model,
            'content': (choice.get('message') or {}).get('content') or '',
            'finish_reason': choice.get('finish_reason'),
            'usage': {
                'prompt_tokens': prompt_tokens,
                'completion_tokens': completion_tokens,
                'total_tokens': usage.get('total_tokens') or prompt_tokens + completion_tokens,
            },
            'estimated_cost': cost,
        }

    def chat_with_fallback(self, messages: List[Dict[str, str]], model: str = DEFAULT_MODEL,
                           fallback_model: str = FALLBACK_MODEL, **kwargs) -> Dict[str, Any]:
        try:
            return self.chat_completion(messages, model=model, **kwargs)
        except OpenRouterError as e:
            if not e.retryable or model == fallback_model:
                raise
            self.logger.warning(f"{model} failed ({e.status_code}: {e.message}), retrying with {fallback_model}")
            return self.chat_completion(messages, model=fallback_model, **kwargs)

    def test_connection(self) -> Dict[str, Any]:
        """Send a tiny prompt to the cheapest model."""
        try:
            result = self.chat_completion(
                [{'role': 'user', 'content': 'Reply with OK'}],
                model='meta-llama/llama-3.1-8b-instruct',
                max_tokens=5,
            )
            return {'success': True, 'model': result['model']}
        except OpenRouterError as e:
            return {'success': False, 'error': e.message, 'status_code': e.status_code}


openrouter_client = OpenRouterClient()
