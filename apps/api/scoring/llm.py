import json
import logging
from typing import Any, Dict, Optional

from openai import OpenAI

logger = logging.getLogger(__name__)


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def complete_json(
    client: OpenAI,
    *,
    system_prompt: str,
    user_prompt: str,
    model: str,
    max_tokens: int = 1500,
) -> Dict[str, Any]:
    """
    Run one chat completion in JSON mode and decode the object it returns.

    Blocking; callers run it in a worker thread.
    """
    response = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        response_format={"type": "json_object"},
        max_tokens=max_tokens,
    )
    content = response.choices[0].message.content or ""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        logger.error("Scoring model returned non-JSON content: %s", content[:200])
        raise ValueError("Scoring model returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise ValueError("Scoring model returned a non-object JSON payload")
    return data
