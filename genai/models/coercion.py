"""
Response coercion: raw model text to the typed value of a prompt's result type
"""
import re
import json
from typing import Any, List
from common.logger import setup_logger
from core.models import ResultType, BoundingBox
from . import ParseError

logger = setup_logger('genai')

_NUMBER_PATTERN = re.compile(r'-?\d+(\.\d+)?')
_CODE_FENCE_PATTERN = re.compile(r'```json\n?|```')

NUMERIC_TYPES = (ResultType.NUMBER, ResultType.SCORE)
JSON_TYPES = (ResultType.BOUNDING_BOX, ResultType.JSON)


def extract_number(content: str) -> float:
    """First signed or unsigned decimal numeral in the text, NaN when absent"""
    if match := _NUMBER_PATTERN.search(content or ''):
        return float(match.group(0))
    return float('nan')


def parse_json_content(content: str) -> Any:
    """Strip code fences and parse JSON, raising ParseError on failure"""
    cleaned = _CODE_FENCE_PATTERN.sub('', content or '').strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ParseError("Model response was not valid JSON.", detail=f"{e}: {cleaned[:200]}")


def to_bounding_boxes(parsed: Any) -> List[BoundingBox]:
    """Convert a parsed JSON array into BoundingBox objects"""
    if not isinstance(parsed, list):
        raise ParseError("Expected a JSON array of bounding boxes.", detail=repr(parsed)[:200])

    boxes = []
    for item in parsed:
        try:
            box = [float(v) for v in item['box']]
            if len(box) != 4:
                raise ValueError(f"expected 4 coordinates, got {len(box)}")
            boxes.append(BoundingBox(box=tuple(box), label=str(item.get('label', ''))))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Skipping malformed detection {item!r}: {e}")
    return boxes


def coerce_response(content: str, result_type: ResultType) -> Any:
    """Coerce stripped model text into typed result data

    Raises:
        ParseError: JSON was required but the content is not valid JSON
    """
    result_type = ResultType(result_type)
    if result_type in NUMERIC_TYPES:
        return extract_number(content)
    if result_type == ResultType.BOUNDING_BOX:
        return to_bounding_boxes(parse_json_content(content))
    if result_type == ResultType.JSON:
        return parse_json_content(content)
    return (content or '').strip()


def coerce_bbox_child_response(content: str, result_type: ResultType) -> Any:
    """Coerce the answer for one detected object of a fan-out child"""
    if ResultType(result_type) in NUMERIC_TYPES:
        return extract_number(content)
    return (content or '').strip()
