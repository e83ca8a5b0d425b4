"""
Model client abstraction for AI providers (OpenAI, Anthropic, mock).

Handles API calls, timeouts and JSON response parsing for market analysis.
"""

import json
import logging
import time
from typing import Any, Dict, Optional
from abc import ABC, abstractmethod

log = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a DeFi market analyst for an autonomous Solana portfolio agent.

Your role:
- Assess current market conditions from the signals provided
- Judge overall risk for a yield-focused portfolio (staking, lending, LP, vaults)
- Suggest at most 5 allocation lines; they are advisory and every action
  still passes independent risk checks

Response format (valid JSON):
{
  "marketAssessment": {
    "sentiment": "bullish|neutral|bearish",
    "confidence": 0-100,
    "reasoning": "short paragraph",
    "keyFactors": ["factor", "..."]
  },
  "allocation": [
    {
      "protocol": "marinade",
      "action": "stake|lend|swap|provide_liquidity|deposit",
      "token": "SOL",
      "percentOfPortfolio": 0-100,
      "rationale": "brief reasoning"
    }
  ],
  "riskAssessment": {
    "overallRisk": 0-100,
    "warnings": ["warning", "..."]
  },
  "explanation": "one or two sentences for the operator"
}
"""


def format_analysis_request(request: Dict[str, Any]) -> str:
    """Render the analysis request as a compact prompt."""
    market = request.get("market", {})
    portfolio = request.get("portfolio", {})

    parts = [
        "=== Market Signals ===",
        f"Volatility index: {market.get('volatility_index', 0):.1f}/100",
        f"24h price change: {market.get('price_change_24h_pct', 0):+.2f}%",
        f"TVL: ${market.get('tvl_usd', 0):,.0f}",
        f"24h volume: ${market.get('volume_24h_usd', 0):,.0f}",
        "",
        "=== Portfolio ===",
        f"Value: ${portfolio.get('value_usd', 0):.2f}",
    ]
    allocation = portfolio.get("allocation_pct") or {}
    for asset, pct in sorted(allocation.items(), key=lambda kv: kv[1], reverse=True)[:8]:
        parts.append(f"  {asset}: {pct:.1f}%")

    parts.append("")
    parts.append("Provide your analysis in JSON format.")
    return "\n".join(parts)


class ModelClient(ABC):
    """Abstract base class for AI model clients."""

    @abstractmethod
    def call(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """
        Call the model with a request payload.

        Args:
            request: Request dict with market and portfolio sections
            timeout: Max time in seconds

        Returns:
            Parsed JSON response

        Raises:
            TimeoutError: If call exceeds timeout
            Exception: On API or parsing errors
        """


class OpenAIClient(ModelClient):
    """OpenAI chat completions client."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", base_url: Optional[str] = None):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url or "https://api.openai.com/v1"

        # Lazy import to avoid requiring openai unless used
        try:
            from openai import OpenAI
            self.client = OpenAI(api_key=api_key, base_url=self.base_url, timeout=10.0)
        except ImportError:
            log.warning("openai package not installed - OpenAIClient will fail at runtime")
            self.client = None

    def call(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        if not self.client:
            raise RuntimeError("OpenAI client not initialized - install openai package")

        start = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": format_analysis_request(request)},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
                timeout=timeout,
            )
            elapsed = time.perf_counter() - start
            log.info(f"OpenAI analysis completed in {elapsed*1000:.1f}ms")
            return json.loads(response.choices[0].message.content)

        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"OpenAI analysis failed after {elapsed*1000:.1f}ms: {e}")
            raise


class AnthropicClient(ModelClient):
    """Anthropic messages client."""

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022"):
        self.api_key = api_key
        self.model = model

        try:
            from anthropic import Anthropic
            self.client = Anthropic(api_key=api_key, timeout=10.0)
        except ImportError:
            log.warning("anthropic package not installed - AnthropicClient will fail at runtime")
            self.client = None

    def call(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        if not self.client:
            raise RuntimeError("Anthropic client not initialized - install anthropic package")

        start = time.perf_counter()
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=2048,
                temperature=0.3,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": format_analysis_request(request)}],
                timeout=timeout,
            )
            elapsed = time.perf_counter() - start
            log.info(f"Anthropic analysis completed in {elapsed*1000:.1f}ms")
            return json.loads(extract_json_block(response.content[0].text))

        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"Anthropic analysis failed after {elapsed*1000:.1f}ms: {e}")
            raise


def extract_json_block(content: str) -> str:
    """Strip a ```json fence if the model wrapped its answer in markdown."""
    if "```json" in content:
        return content.split("```json")[1].split("```")[0].strip()
    if "```" in content:
        return content.split("```")[1].split("```")[0].strip()
    return content.strip()


class MockClient(ModelClient):
    """Mock client for testing and dry runs."""

    model = "mock"

    def __init__(self, fixed_response: Optional[Dict[str, Any]] = None):
        self.fixed_response = fixed_response
        self.calls = 0

    def call(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        self.calls += 1
        if self.fixed_response is not None:
            return self.fixed_response

        change = request.get("market", {}).get("price_change_24h_pct", 0.0)
        sentiment = "bullish" if change > 3 else "bearish" if change < -3 else "neutral"
        return {
            "marketAssessment": {
                "sentiment": sentiment,
                "confidence": 50,
                "reasoning": "Mock assessment from price change",
                "keyFactors": [f"24h change {change:+.2f}%"],
            },
            "allocation": [],
            "riskAssessment": {"overallRisk": 50, "warnings": []},
            "explanation": "Mock analysis",
        }


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create the appropriate model client.

    Args:
        provider: "openai", "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)

    Raises:
        ValueError: If provider is unknown or the key is missing
    """
    provider = provider.lower()

    if provider == "openai":
        if not api_key:
            raise ValueError("OpenAI requires api_key")
        return OpenAIClient(api_key=api_key, model=model or "gpt-4o-mini", **kwargs)

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or "claude-3-5-sonnet-20241022")

    elif provider == "mock":
        return MockClient(fixed_response=kwargs.get("fixed_response"))

    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai', 'anthropic', or 'mock'")
