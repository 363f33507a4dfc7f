"""
AI-assisted contact extraction.

Cleans fetched HTML, asks the model for a JSON document of contacts and
divisions, and reports the tokens and cost the call consumed, including when
the response cannot be parsed.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict

from bs4 import BeautifulSoup, Comment

from .config import ExtractionConfig
from .error_tracker import ExtractionParseError
from .logging_manager import get_logger
from .manual_import import normalize_document
from .models import ExtractedData

logger = get_logger(__name__)


EXTRACTION_PROMPT = """You are an expert at extracting structured contact information from government websites.

Analyze the provided HTML content and extract all contact information for staff members, departments, and divisions.

Return a JSON object with this exact structure:
{
  "headOffice": [
    {
      "name": "Person's full name or null if not available",
      "position": "Job title/position (required)",
      "division": "Department/Division name or null",
      "phones": ["array", "of", "phone", "numbers"],
      "email": "email@example.com or null",
      "fax": "fax number or null"
    }
  ],
  "branches": [
    {
      "name": null,
      "position": null,
      "division": "Branch/Unit name",
      "phones": ["phone numbers"],
      "email": "email or null",
      "fax": null
    }
  ],
  "divisions": ["List", "of", "unique", "division/department", "names", "found"]
}

Guidelines:
1. "headOffice" contains contacts with named individuals or leadership positions
2. "branches" contains general department/unit contacts without named individuals
3. Extract ALL phone numbers, including variations and extensions
4. Normalize phone numbers to include the country code when it can be inferred
5. "divisions" should list all unique department/division names found
6. If no email is found, use null (not empty string)
7. Position is REQUIRED - if unclear, use the division name as position

Return ONLY the JSON object, no other text."""


_FENCED_JSON = re.compile(r'```json\n?([\s\S]*?)\n?```')
_FENCED_ANY = re.compile(r'```\n?([\s\S]*?)\n?```')


def clean_html(html: str, max_chars: int = 100000) -> str:
    """
    Reduce HTML to what the model needs: no scripts, styles, noscript blocks
    or comments, collapsed whitespace, body only when there is one, and at
    most `max_chars` characters.
    """
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    root = soup.body or soup
    cleaned = ''.join(str(child) for child in root.contents)
    cleaned = re.sub(r'\s+', ' ', cleaned)
    cleaned = re.sub(r'>\s+<', '><', cleaned).strip()
    return cleaned[:max_chars]


def parse_model_response(text: str) -> Dict[str, Any]:
    """
    Decode the model's JSON, tolerating a ```json (or bare ```) fenced block.

    Raises:
        ValueError: no JSON object could be decoded.
    """
    match = _FENCED_JSON.search(text) or _FENCED_ANY.search(text)
    candidate = match.group(1) if match else text
    data = json.loads(candidate.strip())
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def calculate_cost(input_tokens: int, output_tokens: int, config: ExtractionConfig) -> float:
    """USD cost at the configured per-million-token rates, rounded to 3 decimals."""
    cost = (input_tokens / 1_000_000 * config.cost_per_1m_input_tokens
            + output_tokens / 1_000_000 * config.cost_per_1m_output_tokens)
    return round(cost, 3)


@dataclass
class ExtractionResult:
    data: ExtractedData
    input_tokens: int
    output_tokens: int
    cost_usd: float

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class ExtractionEngine:
    """
    Turns HTML into ExtractedData with one chat completion.

    The OpenAI client is passed in; tests hand in a Mock exposing
    `chat.completions.create`.
    """

    def __init__(self, client, config: ExtractionConfig = None):
        self.client = client
        self.config = config or ExtractionConfig()

    def extract(self, html: str, source_url: str) -> ExtractionResult:
        cleaned = clean_html(html, self.config.max_input_chars)
        logger.info(f"Sending {len(cleaned)} characters to {self.config.model} for extraction",
                    extra={'details': {'source_url': source_url, 'raw_length': len(html)}})

        response = self.client.chat.completions.create(
            model=self.config.model,
            messages=[
                {"role": "system", "content": EXTRACTION_PROMPT},
                {"role": "user", "content": (
                    f"Extract contact information from this government website HTML:\n\n"
                    f"Source URL: {source_url}\n\n{cleaned}"
                )},
            ],
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            response_format={"type": "json_object"}
        )

        usage = response.usage
        input_tokens = getattr(usage, 'prompt_tokens', 0) or 0
        output_tokens = getattr(usage, 'completion_tokens', 0) or 0
        cost = calculate_cost(input_tokens, output_tokens, self.config)
        content = response.choices[0].message.content or ""

        try:
            data = normalize_document(parse_model_response(content), source_url)
        except ValueError as e:
            logger.error(f"Failed to parse extraction response: {e}", extra={'details': {
                'source_url': source_url, 'raw_response': content[:2000],
                'input_tokens': input_tokens, 'output_tokens': output_tokens
            }})
            raise ExtractionParseError(
                "Failed to parse extraction results. The model may have returned invalid JSON.",
                raw_response=content,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=cost
            )

        logger.info("Extraction complete", extra={'details': {
            'source_url': source_url,
            'head_office': len(data.head_office),
            'branches': len(data.branches),
            'district_offices': len(data.all_district_offices),
            'divisions': len(data.divisions),
            'input_tokens': input_tokens,
            'output_tokens': output_tokens,
            'cost_usd': cost,
        }})
        return ExtractionResult(data=data, input_tokens=input_tokens, output_tokens=output_tokens, cost_usd=cost)
