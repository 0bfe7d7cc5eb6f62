import base64
import json
import logging
from typing import Optional, Protocol

from openai import OpenAI, OpenAIError
from pydantic import ValidationError

from errors import AnalysisUnavailable
from models import ManufacturabilityVerdict
from placement import PRINT_BOUNDS, PrintBounds
from prompts import PROMPTS

logger = logging.getLogger(__name__)


class ManufacturabilityGate(Protocol):
    """Judges a canonical image. Implementations raise AnalysisUnavailable on any failure."""

    def analyze(self, image_png: bytes, timeout: Optional[float] = None) -> ManufacturabilityVerdict:
        ...


VERDICT_FUNCTION = {
    'name': 'judge_manufacturability',
    'description': 'Report whether a logo can be printed on a keychain blank, at what size, in which colors and for what price',
    'parameters': {
        'type': 'object',
        'properties': {
            'isPrintable': {
                'type': 'boolean',
                'description': 'Whether the design can be manufactured as a keychain inlay.'
            },
            'recommendedScale': {
                'type': 'number',
                'description': 'Recommended logo size in millimetres along its longest side.'
            },
            'suggestedColors': {
                'type': 'array',
                'items': {'type': 'string'},
                'description': 'Filament colors as #RRGGBB, most dominant first.'
            },
            'estimatedPrice': {
                'type': 'number',
                'description': 'Estimated price in USD.'
            },
            'reasoning': {
                'type': 'string',
                'description': 'Short explanation shown to the customer.'
            },
        },
        'required': ['isPrintable', 'suggestedColors', 'estimatedPrice', 'reasoning']
    }
}


def parse_verdict(arguments: str) -> ManufacturabilityVerdict:
    """Validates the raw function-call arguments returned by the model."""
    try:
        return ManufacturabilityVerdict.model_validate(json.loads(arguments))
    except (ValueError, ValidationError) as e:
        raise AnalysisUnavailable(f"The analysis service returned an invalid verdict: {e}") from e


class OpenAIManufacturabilityGate:
    """Manufacturability gate backed by an OpenAI vision model with a forced function call."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        bounds: PrintBounds = PRINT_BOUNDS,
    ):
        self._client = client
        self.api_key = api_key
        self.model = model
        self.bounds = bounds

    @property
    def client(self) -> OpenAI:
        # Created on first use so the service starts without credentials.
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def analyze(self, image_png: bytes, timeout: Optional[float] = None) -> ManufacturabilityVerdict:
        image_base64 = base64.b64encode(image_png).decode('utf-8')
        prompt = PROMPTS.PRINTABILITY_ANALYSIS.format(
            min_scale=self.bounds.min_scale, max_scale=self.bounds.max_scale,
        )

        options = {"timeout": timeout} if timeout is not None else {}

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": f"data:image/png;base64,{image_base64}",
                                }
                            }
                        ]
                    }
                ],
                functions=[VERDICT_FUNCTION],
                function_call={"name": VERDICT_FUNCTION['name']},
                **options,
            )
        except OpenAIError as e:
            logger.warning("Manufacturability analysis failed: %s", e)
            raise AnalysisUnavailable(f"The analysis service is unavailable: {e}") from e

        message = response.choices[0].message
        if not message.function_call:
            raise AnalysisUnavailable("The analysis service returned no verdict.")

        verdict = parse_verdict(message.function_call.arguments)
        logger.info(
            "Verdict: printable=%s scale=%s colors=%s price=%s",
            verdict.is_printable, verdict.recommended_scale, list(verdict.suggested_colors), verdict.estimated_price,
        )
        return verdict
