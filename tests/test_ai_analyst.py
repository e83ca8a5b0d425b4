"""
Tests for the LLM market analyst: response parsing, condition mapping,
failure handling and the model client factory.
"""

from unittest.mock import Mock

import pytest

from ai.analyst import MarketAnalyst
from ai.model_client import (
    AnthropicClient,
    MockClient,
    OpenAIClient,
    create_model_client,
    extract_json_block,
    format_analysis_request,
)
from core.exceptions import AnalysisUnavailable
from tests.helpers import idle_base_snapshot, neutral_signals


def _response(sentiment="bearish", confidence=72, risk=80, allocation=None):
    return {
        "marketAssessment": {
            "sentiment": sentiment,
            "confidence": confidence,
            "reasoning": "Funding negative, TVL leaving",
            "keyFactors": ["funding", "tvl"],
        },
        "allocation": allocation if allocation is not None else [
            {"protocol": "marinade", "action": "stake", "token": "SOL",
             "percentOfPortfolio": 30, "rationale": "safe yield"},
        ],
        "riskAssessment": {"overallRisk": risk, "warnings": ["drawdown risk"]},
        "explanation": "Stay defensive",
    }


class TestParseResponse:
    def test_valid_response(self):
        analysis = MarketAnalyst.parse_response(_response())

        assert analysis.sentiment == "bearish"
        assert analysis.confidence == 72.0
        assert analysis.overall_risk == 80.0
        assert analysis.key_factors == ["funding", "tvl"]
        assert analysis.allocation[0].protocol == "marinade"
        assert analysis.allocation[0].percent_of_portfolio == 30.0
        assert analysis.warnings == ["drawdown risk"]

    def test_sentiment_case_insensitive(self):
        assert MarketAnalyst.parse_response(_response(sentiment="Bullish")).sentiment == "bullish"

    def test_numbers_are_clamped(self):
        analysis = MarketAnalyst.parse_response(_response(confidence=140, risk=-5))
        assert analysis.confidence == 100.0
        assert analysis.overall_risk == 0.0

    def test_allocation_limited_to_five_lines(self):
        lines = [{"protocol": f"p{i}", "action": "lend", "token": "USDC", "percentOfPortfolio": 5}
                 for i in range(8)]
        analysis = MarketAnalyst.parse_response(_response(allocation=lines))
        assert [a.protocol for a in analysis.allocation] == ["p0", "p1", "p2", "p3", "p4"]

    def test_bad_allocation_line_is_skipped(self):
        lines = [
            "stake everything",
            {"protocol": "kamino", "action": "deposit", "token": "USDC", "percentOfPortfolio": "lots"},
            {"protocol": "jupiter", "action": "lend", "token": "USDC", "percentOfPortfolio": 10},
        ]
        analysis = MarketAnalyst.parse_response(_response(allocation=lines))
        assert [a.protocol for a in analysis.allocation] == ["jupiter"]

    def test_missing_risk_section_defaults_to_medium(self):
        resp = _response()
        del resp["riskAssessment"]
        assert MarketAnalyst.parse_response(resp).overall_risk == 50.0

    @pytest.mark.parametrize("resp", [
        None,
        "bearish",
        {},
        {"marketAssessment": "bearish"},
        {"marketAssessment": {"sentiment": "euphoric", "confidence": 50}},
        {"marketAssessment": {"sentiment": "neutral", "confidence": "high"}},
    ])
    def test_malformed_response_is_unavailable(self, resp):
        with pytest.raises(AnalysisUnavailable):
            MarketAnalyst.parse_response(resp)


class TestAnalyze:
    def test_mock_client_round_trip(self):
        client = MockClient()
        analyst = MarketAnalyst(client, timeout_s=2.0)

        analysis = analyst.analyze(idle_base_snapshot(), neutral_signals(price_change_24h_pct=-5.0))

        assert analysis.sentiment == "bearish"
        assert analysis.model_used == "mock"
        assert analysis.latency_ms is not None
        assert client.calls == 1

    def test_request_carries_market_and_portfolio(self):
        client = Mock()
        client.call.return_value = _response()
        client.model = "gpt-test"

        MarketAnalyst(client, timeout_s=3.0).analyze(idle_base_snapshot(), neutral_signals())

        request = client.call.call_args.args[0]
        assert client.call.call_args.kwargs["timeout"] == 3.0
        assert request["market"]["volatility_index"] == 30.0
        assert request["portfolio"]["value_usd"] == pytest.approx(1000.0)
        assert request["portfolio"]["allocation_pct"]["SOL"] == pytest.approx(80.0)

    def test_client_error_becomes_unavailable(self):
        client = Mock()
        client.call.side_effect = TimeoutError("model timed out")

        with pytest.raises(AnalysisUnavailable, match="model timed out"):
            MarketAnalyst(client).analyze(idle_base_snapshot(), neutral_signals())


class TestToCondition:
    @pytest.mark.parametrize("risk,regime", [(85, "high"), (71, "high"), (70, "moderate"), (41, "moderate"), (40, "low")])
    def test_risk_maps_to_regime(self, risk, regime):
        analyst = MarketAnalyst(MockClient())
        analysis = MarketAnalyst.parse_response(_response(sentiment="neutral", risk=risk))
        assert analyst.to_condition(analysis, neutral_signals()).volatility_regime == regime

    def test_condition_fields(self):
        analyst = MarketAnalyst(MockClient())
        analysis = MarketAnalyst.parse_response(_response())

        condition = analyst.to_condition(analysis, neutral_signals())

        assert condition.trend_direction == "bearish"
        assert condition.confidence == 72.0
        assert condition.recommended_category == "yield"
        assert condition.source == "analysis"
        assert condition.summary == "Stay defensive"
        assert condition.volatility_index == 30.0


class TestFromConfig:
    def test_disabled_returns_none(self):
        assert MarketAnalyst.from_config({"enabled": False}) is None
        assert MarketAnalyst.from_config(None) is None

    def test_mock_provider(self):
        analyst = MarketAnalyst.from_config({"enabled": True, "provider": "mock", "timeout_s": 4})
        assert isinstance(analyst.client, MockClient)
        assert analyst.timeout_s == 4.0

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
        analyst = MarketAnalyst.from_config(
            {"enabled": True, "provider": "openai", "api_key_env": "TEST_OPENAI_KEY"}
        )
        assert isinstance(analyst.client, OpenAIClient)
        assert analyst.client.api_key == "sk-test"

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.delenv("TEST_OPENAI_KEY", raising=False)
        with pytest.raises(ValueError):
            MarketAnalyst.from_config({"enabled": True, "provider": "openai", "api_key_env": "TEST_OPENAI_KEY"})


class TestModelClient:
    def test_factory_providers(self):
        assert isinstance(create_model_client("mock"), MockClient)
        assert isinstance(create_model_client("OpenAI", api_key="k"), OpenAIClient)
        assert isinstance(create_model_client("anthropic", api_key="k"), AnthropicClient)

    def test_factory_rejects_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            create_model_client("llama")

    def test_fixed_response(self):
        client = create_model_client("mock", fixed_response={"marketAssessment": {}})
        assert client.call({}, timeout=1.0) == {"marketAssessment": {}}

    def test_extract_json_block(self):
        assert extract_json_block('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert extract_json_block('```\n{"a": 1}\n```') == '{"a": 1}'
        assert extract_json_block(' {"a": 1} ') == '{"a": 1}'

    def test_prompt_lists_allocation_largest_first(self):
        prompt = format_analysis_request({
            "market": {"volatility_index": 30, "price_change_24h_pct": -1.5},
            "portfolio": {"value_usd": 1000, "allocation_pct": {"USDC": 20.0, "SOL": 80.0}},
        })
        assert "24h price change: -1.50%" in prompt
        assert prompt.index("SOL: 80.0%") < prompt.index("USDC: 20.0%")
