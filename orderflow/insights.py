import logging
from typing import Sequence

from openai import OpenAI

from . import config
from .analytics import Bottleneck
from .statuses import status_config

logger = logging.getLogger(__name__)


def _llm_client() -> OpenAI:
    return OpenAI(base_url=config.LLM_BASE_URL, api_key=config.LLM_API_KEY)


def bottleneck_prompt(bottlenecks: Sequence[Bottleneck]) -> str:
    lines = [
        f"- {status_config(b.status).label}: average {b.avg_minutes:.0f} minutes over {b.samples} orders"
        for b in bottlenecks
    ]
    return (
        "You are an operations analyst for a laundry and dry cleaning business.\n"
        "These are the slowest stages of the order pipeline:\n"
        + "\n".join(lines)
        + "\n\nProvide a concise 3-sentence root cause analysis and recommendation."
    )


def generate_bottleneck_insight(bottlenecks: Sequence[Bottleneck], client=None) -> str:
    if not bottlenecks:
        return "No data available."

    client = client or _llm_client()
    try:
        response = client.chat.completions.create(
            model=config.LLM_MODEL,
            messages=[
                {"role": "system", "content": "You are a helpful operations expert."},
                {"role": "user", "content": bottleneck_prompt(bottlenecks)},
            ],
            max_tokens=200,
        )
        return response.choices[0].message.content
    except Exception as e:
        logger.warning("Insight generation failed: %s", e)
        return f"Insight unavailable: {e}"
