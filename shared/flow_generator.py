"""
Workflow definition generation through the Anthropic Messages API
"""

import json
import math
import time
import logging
from typing import Any, Dict, Optional

import requests

from config.settings import get_settings
from shared.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

FLOW_SCHEMA_URL = "https://schema.management.azure.com/providers/Microsoft.Logic/schemas/2016-06-01/workflowdefinition.json#"

FLOW_PROMPT_TEMPLATE = """You are a Power Automate flow generation expert. Generate a complete, valid Power Automate Cloud Flow JSON definition based on this request:

"{prompt}"

{flow_name_line}

CRITICAL REQUIREMENTS:
1. Use ONLY the standard Power Automate schema: "{schema_url}"
2. Include proper contentVersion: "1.0.0.0"
3. Use valid triggers (manual, recurrence, SharePoint, etc.)
4. Use valid actions with proper runAfter dependencies
5. Include connection references where needed
6. Return ONLY the JSON - no markdown, no explanations
7. Ensure all expressions use proper Power Automate syntax (@{{}}, triggerOutputs(), etc.)
8. Make sure the flow is production-ready and follows best practices

Generate the flow JSON now:"""

RAW_RESPONSE_PREVIEW_CHARS = 500


class FlowGenerationError(Exception):
    """Generation failed; status_code is the HTTP status to answer with"""

    def __init__(self, message, status_code=500, details=None, raw_response=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details
        self.raw_response = raw_response

    def to_dict(self) -> Dict[str, Any]:
        body = {'error': self.message}
        if self.details is not None:
            body['details'] = self.details
        if self.raw_response is not None:
            body['rawResponse'] = self.raw_response
        return body


def build_prompt(prompt: str, flow_name: Optional[str] = None) -> str:
    flow_name_line = f'Flow name should be: "{flow_name}"' if flow_name else ''
    return FLOW_PROMPT_TEMPLATE.format(
        prompt=prompt,
        flow_name_line=flow_name_line,
        schema_url=FLOW_SCHEMA_URL
    )


def strip_code_fences(text: str) -> str:
    """Remove a Markdown code fence wrapped around the model output"""
    cleaned = text.strip()
    if cleaned.startswith('```'):
        first_newline = cleaned.find('\n')
        if first_newline == -1:
            cleaned = cleaned[3:]
            if cleaned.startswith('json'):
                cleaned = cleaned[4:]
        else:
            cleaned = cleaned[first_newline + 1:]
        if cleaned.rstrip().endswith('```'):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def estimate_tokens(prompt: str, response_text: str) -> int:
    """Approximate token count at four characters per token"""
    return math.ceil((len(prompt) + len(response_text)) / 4)


def call_llm(prompt_text: str, settings=None) -> str:
    """
    Send one user message to the LLM provider and return the first text block

    Raises:
        FlowGenerationError: on configuration, transport or provider errors
    """
    settings = settings or get_settings()
    api_key = settings.api_keys['anthropic_api_key']
    if not api_key:
        logger.error("ANTHROPIC_API_KEY not configured")
        raise FlowGenerationError('API key not configured', status_code=500)

    generation = settings.generation
    try:
        response = requests.post(
            generation.api_url,
            headers={
                'Content-Type': 'application/json',
                'x-api-key': api_key,
                'anthropic-version': generation.api_version
            },
            json={
                'model': generation.model,
                'max_tokens': generation.max_tokens,
                'messages': [{'role': 'user', 'content': prompt_text}]
            },
            timeout=generation.timeout_seconds
        )
    except requests.RequestException as e:
        logger.error(f"LLM request failed: {sanitize_for_log(e)}")
        raise FlowGenerationError('LLM API unreachable', status_code=502) from e

    if not response.ok:
        logger.error(f"LLM API error: {response.status_code} {sanitize_for_log(response.text)}")
        raise FlowGenerationError(
            f'LLM API error: {response.status_code}',
            status_code=response.status_code,
            details=response.text
        )

    data = response.json()
    for block in data.get('content') or []:
        if block.get('type') == 'text' and block.get('text'):
            return block['text']

    logger.error("No flow JSON in LLM response")
    raise FlowGenerationError('No flow JSON returned from LLM', status_code=500)


def generate_flow(prompt: str, flow_name: Optional[str] = None, settings=None) -> Dict[str, Any]:
    """
    Generate a workflow definition for a natural-language request

    Returns:
        dict: flow (parsed JSON), raw_json, tokens_used, generation_time
    """
    start_time = time.time()
    text = call_llm(build_prompt(prompt, flow_name), settings=settings)
    generation_time = round(time.time() - start_time, 2)

    raw_json = strip_code_fences(text)
    try:
        flow = json.loads(raw_json)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse flow JSON: {sanitize_for_log(e)}")
        raise FlowGenerationError(
            'Invalid JSON returned from LLM',
            status_code=500,
            raw_response=raw_json[:RAW_RESPONSE_PREVIEW_CHARS]
        ) from e

    return {
        'flow': flow,
        'raw_json': raw_json,
        'tokens_used': estimate_tokens(prompt, text),
        'generation_time': generation_time
    }
