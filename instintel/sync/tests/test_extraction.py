#!/usr/bin/env python3
"""
Unit tests for HTML cleaning, response parsing and the extraction engine.
"""

import json
from unittest.mock import Mock

import pytest

from ..config import ExtractionConfig
from ..error_tracker import ExtractionParseError
from ..extraction import ExtractionEngine, calculate_cost, clean_html, parse_model_response

SOURCE = "https://www.example.gov.lk/contact-us"


def make_response(content, prompt_tokens=1200, completion_tokens=300):
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    response.usage = Mock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return response


SAMPLE_RESPONSE = {
    "headOffice": [
        {"name": "A. Perera", "position": "Commissioner General", "division": None,
         "phones": ["+94 11 2345678"], "email": "cg@example.gov.lk", "fax": None},
        {"name": None, "position": "Chief Accountant", "division": "Finance",
         "phones": ["+94 11 2345679"], "email": "", "fax": "+94 11 2345600"},
    ],
    "branches": [
        {"name": None, "position": None, "division": "Registry",
         "phones": ["+94 11 2345680"], "email": None, "fax": None},
    ],
    "divisions": ["Finance", "Registry", "Finance"],
}


class TestCleanHtml:
    """Test HTML preprocessing before the model call."""

    def test_removes_scripts_styles_noscript_and_comments(self):
        html = """
        <html><head><style>body { color: red; }</style></head>
        <body>
            <script>var tracking = 1;</script>
            <noscript>Enable JavaScript</noscript>
            <!-- internal note -->
            <p>Director</p>
        </body></html>
        """
        cleaned = clean_html(html)

        assert "tracking" not in cleaned
        assert "color: red" not in cleaned
        assert "Enable JavaScript" not in cleaned
        assert "internal note" not in cleaned
        assert "<p>Director</p>" in cleaned

    def test_keeps_body_only_and_collapses_whitespace(self):
        html = "<html><head><title>Head title</title></head><body>\n  <div>\n   <p>A    B</p>\n  </div>\n</body></html>"
        cleaned = clean_html(html)

        assert "Head title" not in cleaned
        assert cleaned == "<div><p>A B</p></div>"

    def test_truncates_to_budget(self):
        html = "<body><p>" + "x" * 500 + "</p></body>"
        assert len(clean_html(html, max_chars=100)) == 100

    def test_fragment_without_body(self):
        assert clean_html("<p>Only   a fragment</p>") == "<p>Only a fragment</p>"


class TestParseModelResponse:
    """Test tolerant JSON decoding of model output."""

    def test_plain_json(self):
        assert parse_model_response('{"headOffice": []}') == {"headOffice": []}

    def test_json_fenced_block(self):
        text = 'Here you go:\n```json\n{"branches": [], "divisions": ["A"]}\n```\nDone.'
        assert parse_model_response(text) == {"branches": [], "divisions": ["A"]}

    def test_bare_fenced_block(self):
        text = '```\n{"divisions": ["B"]}\n```'
        assert parse_model_response(text) == {"divisions": ["B"]}

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError):
            parse_model_response("I could not find any contacts on this page.")

    def test_non_object_raises(self):
        with pytest.raises(ValueError):
            parse_model_response('["not", "an", "object"]')


class TestCalculateCost:

    def test_rates_per_million_tokens(self):
        config = ExtractionConfig(cost_per_1m_input_tokens=3.0, cost_per_1m_output_tokens=15.0)
        assert calculate_cost(1_000_000, 1_000_000, config) == 18.0

    def test_rounded_to_three_decimals(self):
        config = ExtractionConfig(cost_per_1m_input_tokens=2.0, cost_per_1m_output_tokens=8.0)
        assert calculate_cost(123456, 7890, config) == 0.31


class TestExtractionEngine:
    """Test the model call contract with a mocked OpenAI client."""

    @pytest.fixture
    def mock_client(self):
        return Mock()

    @pytest.fixture
    def engine(self, mock_client):
        return ExtractionEngine(mock_client, ExtractionConfig(model="test-model"))

    def test_extract_success(self, engine, mock_client):
        mock_client.chat.completions.create.return_value = make_response(json.dumps(SAMPLE_RESPONSE))

        result = engine.extract("<html><body><p>contacts</p></body></html>", SOURCE)

        assert result.data.source == SOURCE
        assert len(result.data.head_office) == 2
        assert result.data.head_office[1].email is None
        assert result.data.branches[0].position == "Registry"
        assert result.data.divisions == ["Finance", "Registry"]
        assert result.input_tokens == 1200
        assert result.output_tokens == 300
        assert result.tokens_used == 1500
        assert result.cost_usd == calculate_cost(1200, 300, engine.config)

        mock_client.chat.completions.create.assert_called_once()
        call_args = mock_client.chat.completions.create.call_args
        assert call_args[1]["model"] == "test-model"
        assert call_args[1]["temperature"] == 0.0
        assert call_args[1]["response_format"] == {"type": "json_object"}
        user_message = call_args[1]["messages"][1]["content"]
        assert SOURCE in user_message
        assert "<p>contacts</p>" in user_message

    def test_extract_fenced_response(self, engine, mock_client):
        content = "```json\n" + json.dumps({"headOffice": [{"position": "Director"}]}) + "\n```"
        mock_client.chat.completions.create.return_value = make_response(content)

        result = engine.extract("<p>x</p>", SOURCE)

        assert result.data.head_office[0].position == "Director"
        assert result.data.branches == []

    def test_extract_parse_failure_reports_tokens(self, engine, mock_client):
        """Unparseable output raises with the raw response and the consumed tokens."""
        mock_client.chat.completions.create.return_value = make_response(
            "I'm sorry, I cannot help with that.", prompt_tokens=900, completion_tokens=12
        )

        with pytest.raises(ExtractionParseError) as exc_info:
            engine.extract("<p>x</p>", SOURCE)

        error = exc_info.value
        assert error.raw_response == "I'm sorry, I cannot help with that."
        assert error.input_tokens == 900
        assert error.output_tokens == 12
        assert error.tokens_used == 912
        assert error.message

    def test_extract_invalid_shape_is_parse_failure(self, engine, mock_client):
        mock_client.chat.completions.create.return_value = make_response(
            json.dumps({"headOffice": "not a list"})
        )

        with pytest.raises(ExtractionParseError):
            engine.extract("<p>x</p>", SOURCE)

    def test_model_input_is_truncated(self, mock_client):
        engine = ExtractionEngine(mock_client, ExtractionConfig(max_input_chars=50))
        mock_client.chat.completions.create.return_value = make_response('{"headOffice": []}')

        engine.extract("<body>" + "y" * 1000 + "</body>", SOURCE)

        user_message = mock_client.chat.completions.create.call_args[1]["messages"][1]["content"]
        assert user_message.count("y") == 50
