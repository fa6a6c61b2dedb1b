"""
Tests for the HRN (Human Response Needed) classifier.

This test suite verifies:
- Rule cascade: risk terms, document review, trivial acknowledgments
- Model fallback and output parsing
- Fail-safe: every model-side failure resolves to HRN
"""

import pytest

from dm_pilot.hrn import (
    HRNClassifier,
    check_doc_review,
    check_risk_terms,
    check_trivial_ack,
    parse_classifier_output,
)


class TestRules:
    """Tests for the deterministic rules."""

    def test_risk_term(self):
        decision = check_risk_terms("Can I get a refund please")
        assert decision.hrn is True
        assert decision.confidence == 0.95
        assert decision.signals == ["refund"]

    def test_risk_terms_are_case_insensitive(self):
        decision = check_risk_terms("I want to CANCEL, talk to my Lawyer")
        assert set(decision.signals) == {"cancel", "lawyer"}

    def test_no_risk_term(self):
        assert check_risk_terms("hi there") is None

    def test_doc_review(self):
        decision = check_doc_review("please review the contract")
        assert decision.hrn is True
        assert decision.confidence == 0.9
        assert "contract" in decision.signals
        assert "review" in decision.signals

    def test_doc_without_review_verb(self):
        assert check_doc_review("here is the pdf") is None

    @pytest.mark.parametrize("text", ["ok!", "Thanks", "sounds good.", "got it", "👍"])
    def test_trivial_ack(self, text):
        decision = check_trivial_ack(text)
        assert decision.hrn is False
        assert decision.confidence == 0.15
        assert decision.signals == ["trivial_ack"]

    def test_unknown_short_phrase_is_not_trivial(self):
        assert check_trivial_ack("ok ok") is None

    def test_long_message_is_not_trivial(self):
        assert check_trivial_ack("thanks, and one more question for you") is None


class TestParseClassifierOutput:
    """Tests for model answer parsing."""

    def test_fenced_json(self):
        raw = '```json\n{"hrn": false, "confidence": 0.3, "signals": ["greeting"], "reason": "hello"}\n```'
        decision = parse_classifier_output(raw)
        assert decision.hrn is False
        assert decision.confidence == 0.3
        assert decision.signals == ["greeting"]
        assert decision.reason == "hello"

    def test_json_inside_prose(self):
        decision = parse_classifier_output('Sure! {"hrn": true, "confidence": 0.8} hope this helps')
        assert decision.hrn is True
        assert decision.confidence == 0.8

    def test_unparseable_defaults_to_hrn(self):
        decision = parse_classifier_output("I think it's fine")
        assert decision.hrn is True
        assert decision.confidence == 0.2
        assert decision.signals == ["parse_fallback"]

    def test_confidence_clamped(self):
        assert parse_classifier_output('{"hrn": true, "confidence": 1.7}').confidence == 1.0
        assert parse_classifier_output('{"hrn": false, "confidence": -2}').confidence == 0.0

    def test_non_finite_confidence_defaults(self):
        assert parse_classifier_output('{"hrn": true, "confidence": NaN}').confidence == 0.6
        assert parse_classifier_output('{"hrn": false, "confidence": Infinity}').confidence == 0.3

    def test_missing_confidence_defaults(self):
        assert parse_classifier_output('{"hrn": true}').confidence == 0.6
        assert parse_classifier_output('{"hrn": false}').confidence == 0.3

    def test_signals_capped_at_ten(self):
        raw = '{"hrn": true, "signals": [1,2,3,4,5,6,7,8,9,10,11,12]}'
        decision = parse_classifier_output(raw)
        assert decision.signals == [str(i) for i in range(1, 11)]

    def test_default_reason(self):
        assert parse_classifier_output('{"hrn": false}').reason == "Classifier favored AUTO_OK."


class TestHRNClassifier:
    """Tests for the full cascade."""

    @pytest.mark.asyncio
    async def test_empty_message(self, mock_ai_client):
        decision = await HRNClassifier(mock_ai_client).classify("   ")
        assert decision.hrn is False
        assert decision.confidence == 0.1
        mock_ai_client.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_rule_short_circuits_model(self, mock_ai_client):
        decision = await HRNClassifier(mock_ai_client).classify("I need a refund")
        assert decision.hrn is True
        mock_ai_client.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_trivial_ack_auto_ok(self, mock_ai_client):
        decision = await HRNClassifier(mock_ai_client).classify("ok!")
        assert decision.hrn is False
        assert decision.signals == ["trivial_ack"]
        mock_ai_client.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_model_decides_when_no_rule_fires(self, mock_ai_client):
        mock_ai_client.complete.return_value = '{"hrn": false, "confidence": 0.25, "signals": ["simple_request"]}'

        decision = await HRNClassifier(mock_ai_client).classify(
            "what's the price?", context_snippet="hey"
        )

        assert decision.hrn is False
        assert decision.confidence == 0.25
        kwargs = mock_ai_client.complete.call_args.kwargs
        assert "what's the price?" in kwargs["prompt"]
        assert "Context (optional): hey" in kwargs["prompt"]
        assert kwargs["temperature"] == 0.4

    @pytest.mark.asyncio
    async def test_model_unavailable_escalates(self, mock_ai_client):
        mock_ai_client.complete.return_value = None

        decision = await HRNClassifier(mock_ai_client).classify("tell me more about it")

        assert decision.hrn is True
        assert decision.signals == ["llm_unavailable"]

    @pytest.mark.asyncio
    async def test_no_model_escalates(self):
        decision = await HRNClassifier(None).classify("tell me more about it")
        assert decision.hrn is True
        assert decision.signals == ["llm_unavailable"]

    @pytest.mark.asyncio
    async def test_input_sanitized_and_truncated(self, mock_ai_client):
        mock_ai_client.complete.return_value = '{"hrn": false}'

        await HRNClassifier(mock_ai_client).classify("<b>" + "a" * 2000)

        prompt = mock_ai_client.complete.call_args.kwargs["prompt"]
        assert "<b>" not in prompt
        assert "b" + "a" * 1199 in prompt
        assert "a" * 1200 not in prompt

    def test_classify_rules_returns_none_without_hit(self):
        assert HRNClassifier().classify_rules("what's the price?") is None

    def test_classify_rules_hit(self):
        decision = HRNClassifier().classify_rules("can you check the pdf and sign")
        assert decision.hrn is True
