"""
AI Planner

Turns a free-text request into an Automation using the Claude API.
Requests are rate limited, cached for an hour and retried with backoff.
"""

import os
import re
import json
import time
import hashlib
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import anthropic

from synapscript.models import Action, Automation, GeneratedCode, Trigger
from synapscript.runner.materializer import scan_code


logger = logging.getLogger("synapscript.planner")

DEFAULT_MODEL = os.getenv('SYNAPSCRIPT_PLANNER_MODEL', 'claude-sonnet-4-20250514')
MIN_REQUEST_INTERVAL = 1.0
CACHE_TTL_SECONDS = 3600
MAX_ATTEMPTS = 3
BACKOFF_SECONDS = 2.0


PLAN_PROMPT = """You turn a user's request into an automation for an Android phone running Termux.

The user wants to: "{request}"

Return a JSON object with these exact keys:
{{
  "understanding": "One sentence restating what the user wants",
  "automation": {{
    "name": "Short automation name",
    "trigger": {{"type": "manual" | "schedule" | "event", "cron_expression": "5-field cron, only for schedule", "description": "only for event"}},
    "actions": [
      {{"description": "What this step does", "icon": "single emoji", "kind": "termux_api" | "node_script" | "bash_command", "command": "shell command"}}
    ]
  }},
  "generated_code": {{"language": "javascript" | "bash", "code": "complete runnable script"}},
  "requirements": ["termux packages or permissions needed"]
}}

Rules:
- Use termux-api commands (termux-notification, termux-battery-status, termux-tts-speak, ...) for device features
- Never delete files outside the home directory, never use eval or spawn child processes from JavaScript
- Return ONLY valid JSON, no explanation or markdown"""


class PlannerError(Exception):
    """The planner could not produce a valid automation."""


class PlannerQuotaError(PlannerError):
    """The model provider rejected the request for quota or rate limit reasons."""


def extract_json(response_text: str) -> Any:
    """
    Extract a JSON document from a model response.

    Tries the raw text, then a fenced code block, then the widest
    brace or bracket span.
    """
    text = response_text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    block = re.search(r'```(?:json)?\s*([\s\S]*?)\s*```', text)
    if block:
        try:
            return json.loads(block.group(1))
        except json.JSONDecodeError:
            pass

    span = re.search(r'(\{[\s\S]*\}|\[[\s\S]*\])', text)
    if span:
        try:
            return json.loads(span.group(1))
        except json.JSONDecodeError:
            pass

    raise PlannerError(f"Could not extract valid JSON from AI response: {text[:200]}")


def validate_plan(response: Dict[str, Any]) -> None:
    """Raise PlannerError if a parsed plan is missing required parts."""
    if not isinstance(response, dict):
        raise PlannerError("AI response is not a JSON object")

    for key in ('understanding', 'automation', 'generated_code'):
        if not response.get(key):
            raise PlannerError(f"Missing required field: {key}")

    automation = response['automation']
    if not automation.get('name') or not automation.get('trigger'):
        raise PlannerError("Incomplete automation definition")

    if not response['generated_code'].get('code'):
        raise PlannerError("No executable code generated")


class Planner:
    """
    Rate-limited, cached, retrying client for automation planning.

    Usage:
        planner = Planner()
        automation = planner.plan("Remind me to drink water every hour")
    """

    def __init__(
        self,
        client: anthropic.Anthropic = None,
        api_key: str = None,
        model: str = DEFAULT_MODEL,
        min_interval: float = MIN_REQUEST_INTERVAL,
        max_attempts: int = MAX_ATTEMPTS,
        backoff: float = BACKOFF_SECONDS,
        cache_ttl: float = CACHE_TTL_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._client = client
        self.api_key = api_key or os.getenv('ANTHROPIC_API_KEY')
        self.model = model
        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.cache_ttl = cache_ttl
        self._sleep = sleep

        self.request_count = 0
        self._last_request_time = 0.0
        self._cache: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()
        self._cache_lock = threading.Lock()

    @property
    def client(self) -> anthropic.Anthropic:
        if self._client is None:
            if not self.api_key:
                raise PlannerError("ANTHROPIC_API_KEY not found in environment or .env file")
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def plan(self, text: str) -> Automation:
        """
        Plan an automation for a free-text request.

        Raises:
            PlannerError: if the model fails or returns an unusable plan
            DangerousCodeError: if the generated code matches the denylist
        """
        raw = self.generate(PLAN_PROMPT.format(request=text))
        response = extract_json(raw)
        validate_plan(response)
        scan_code(response['generated_code']['code'])

        definition = response['automation']
        try:
            return Automation(
                name=definition['name'],
                trigger=Trigger.from_dict(definition['trigger']),
                actions=[Action.from_dict(a) for a in definition.get('actions') or []],
                generated_code=GeneratedCode.from_dict(response['generated_code'])
            )
        except ValueError as e:
            raise PlannerError(f"Invalid automation definition: {e}") from e

    def generate(self, prompt: str, use_cache: bool = True) -> str:
        """Send a prompt to the model and return the response text."""
        if use_cache:
            cached = self._get_cached(prompt)
            if cached is not None:
                logger.info("Using cached AI response")
                return cached

        for attempt in range(1, self.max_attempts + 1):
            self._wait_for_rate_limit()
            logger.info(f"AI request attempt {attempt}/{self.max_attempts} with model {self.model}")
            try:
                message = self.client.messages.create(
                    model=self.model,
                    max_tokens=4096,
                    messages=[{"role": "user", "content": prompt}]
                )
            except anthropic.RateLimitError as e:
                raise PlannerQuotaError("AI quota exceeded. Try again in 1 minute.") from e
            except anthropic.APIError as e:
                logger.warning(f"AI request attempt {attempt} failed: {e}")
                if attempt < self.max_attempts:
                    self._sleep(self.backoff * attempt)
                continue

            response_text = message.content[0].text
            self.request_count += 1
            if use_cache:
                self._set_cached(prompt, response_text)
            return response_text

        raise PlannerError(f"AI generation failed after {self.max_attempts} attempts")

    def stats(self) -> Dict[str, int]:
        return {'request_count': self.request_count, 'cache_size': len(self._cache)}

    def _wait_for_rate_limit(self) -> None:
        with self._lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.min_interval:
                wait = self.min_interval - elapsed
                logger.debug(f"Rate limit: waiting {wait:.2f}s")
                self._sleep(wait)
            self._last_request_time = time.time()

    def _get_cached(self, prompt: str) -> Optional[str]:
        key = hashlib.sha256(prompt.encode('utf-8')).hexdigest()
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            timestamp, data = entry
            if time.time() - timestamp > self.cache_ttl:
                del self._cache[key]
                return None
            return data

    def _set_cached(self, prompt: str, data: str) -> None:
        key = hashlib.sha256(prompt.encode('utf-8')).hexdigest()
        now = time.time()
        with self._cache_lock:
            expired = [k for k, (timestamp, _) in self._cache.items() if now - timestamp > self.cache_ttl]
            for k in expired:
                del self._cache[k]
            self._cache[key] = (now, data)
