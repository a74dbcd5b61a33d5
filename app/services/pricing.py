"""
Cost attribution per 1M tokens (USD). Gateways pass provider pricing through unchanged.
Unknown models cost 0 with a warning: pricing must never block a response.
"""
import logging

logger = logging.getLogger(__name__)

PRICING: dict[str, dict[str, float]] = {
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "claude-3-sonnet-20240229": {"input": 3.0, "output": 15.0},
    "grok-3": {"input": 3.0, "output": 15.0},
    "gemini-2.0-flash": {"input": 0.1, "output": 0.4},
}

COST_DECIMALS = 6


def calculate_cost(pricing_key: str, input_tokens: int, output_tokens: int) -> float:
    pricing = PRICING.get(pricing_key)
    if not pricing:
        logger.warning("No pricing found for model %s; cost recorded as 0", pricing_key)
        return 0.0
    input_cost = (input_tokens / 1_000_000) * pricing["input"]
    output_cost = (output_tokens / 1_000_000) * pricing["output"]
    return round(input_cost + output_cost, COST_DECIMALS)


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return f"${cost:.6f}"
    return f"${cost:.4f}"


def format_latency(latency_ms: int) -> str:
    if latency_ms < 1000:
        return f"{latency_ms}ms"
    return f"{latency_ms / 1000:.2f}s"
