import json
import logging
import os
from dataclasses import dataclass

import requests

logger = logging.getLogger('flashstreak.llm')

DEFAULT_API_URL = 'https://api.openai.com/v1/chat/completions'
DEFAULT_MODEL = 'gpt-4o-mini'

PROMPT = """You are a language learning assistant grading a student's translation answer.

The student was asked to translate "{native}" into {language}.

Correct answer: "{correct}"
Student's answer: "{answer}"

Grade this answer with the following criteria:
- PASS if the meaning is correct, even with minor spelling mistakes or small grammatical errors
- PASS if they used a valid alternative phrasing that conveys the same meaning
- FAIL only if the meaning is wrong or significantly different

Respond in this exact JSON format:
{{
  "passed": true or false,
  "correction": "only include if there are spelling/grammar issues to fix, otherwise null",
  "feedback": "brief encouraging feedback about their answer (1-2 sentences max)"
}}

Be lenient and encouraging. Language learning is about communication, not perfection."""


@dataclass(frozen=True)
class LlmGrade:
    passed: bool
    correction: object
    feedback: str

    def to_dict(self):
        return {'passed': self.passed, 'correction': self.correction, 'feedback': self.feedback}


def grade_with_llm(user_answer, correct_answer, target_language, native_translation=None, timeout=20):
    """Ask the chat-completions API for a lenient pass/fail verdict.

    This is an alternative to grading.grade_answer and yields no SM-2 quality.
    """
    api_key = os.environ.get('OPENAI_API_KEY')
    if not api_key:
        raise RuntimeError('OPENAI_API_KEY not configured')
    url = os.environ.get('OPENAI_API_URL') or DEFAULT_API_URL
    model = os.environ.get('OPENAI_MODEL') or DEFAULT_MODEL

    prompt = PROMPT.format(
        native=native_translation or '',
        language=target_language,
        correct=correct_answer,
        answer=user_answer,
    )
    payload = {
        'model': model,
        'messages': [{'role': 'user', 'content': prompt}],
        'temperature': 0.3,
        'response_format': {'type': 'json_object'},
    }
    headers = {'Authorization': f'Bearer {api_key}'}
    logger.debug('Requesting LLM grade model=%s language=%s', model, target_language)
    resp = requests.post(url, json=payload, headers=headers, timeout=timeout)
    if resp.status_code != 200:
        raise RuntimeError(f'LLM grading failed: {resp.status_code} {resp.text}')

    try:
        content = resp.json()['choices'][0]['message']['content'] or '{}'
        result = json.loads(content)
    except (KeyError, IndexError, TypeError, ValueError):
        logger.warning('Unparseable LLM grading reply: %s', resp.text[:200])
        result = {}
    if not isinstance(result, dict):
        result = {}

    return LlmGrade(
        passed=bool(result.get('passed', False)),
        correction=result.get('correction') or None,
        feedback=result.get('feedback') or 'Keep practicing!',
    )
