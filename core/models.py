"""
Data model for prompts and analysis results
"""
import math
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple


class ResultType(str, Enum):
    TEXT = 'text'
    BOUNDING_BOX = 'bbox'
    SCORE = 'score'
    NUMBER = 'number'
    YES_NO = 'yes/no'
    CATEGORY = 'category'
    JSON = 'json'


class AnalysisStatus(str, Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    SUCCESS = 'success'
    ERROR = 'error'


DEFAULT_SCORE_RANGE = (0.0, 10.0)

# Original JSON keys used by exported prompt sets
_PROMPT_KEYS = {
    'result_type': 'type',
    'parent_id': 'parentId',
    'condition_operator': 'scoreConditionOperator',
    'condition_value': 'scoreConditionValue',
    'score_range': 'scoreRange',
    'json_schema': 'jsonSchema',
    'region_type': 'regionType',
    'region_coords': 'regionCoords',
}


def _number(value: Any, name: str) -> float:
    """Accept numbers and numeric strings; keep ints as ints"""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")


def _numbers(values: Any, name: str, lengths: Tuple[int, ...]) -> Tuple[float, ...]:
    if isinstance(values, (str, bytes)) or not hasattr(values, '__len__') or len(values) not in lengths:
        expected = ' or '.join(str(n) for n in lengths)
        raise ValueError(f"{name} must hold {expected} numbers, got {values!r}")
    return tuple(_number(v, name) for v in values)


@dataclass
class Prompt:
    """A node of the prompt forest"""
    id: str
    text: str
    result_type: ResultType = ResultType.TEXT
    parent_id: Optional[str] = None
    condition: Optional[str] = None  # yes|no, for YesNo parents
    condition_operator: Optional[str] = None  # above|below, for Score parents
    condition_value: Optional[float] = None
    score_range: Optional[Tuple[float, float]] = None
    categories: Optional[List[str]] = None
    json_schema: Optional[str] = None
    region_type: Optional[str] = None  # point|bbox
    region_coords: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        self.result_type = ResultType(self.result_type)
        if self.condition_value is not None:
            self.condition_value = _number(self.condition_value, 'condition_value')
        if self.score_range is not None:
            self.score_range = _numbers(self.score_range, 'score_range', (2,))
        if self.region_coords is not None:
            self.region_coords = _numbers(self.region_coords, 'region_coords', (2, 4))
        if self.categories is not None and (
            not isinstance(self.categories, list) or not all(isinstance(c, str) for c in self.categories)
        ):
            raise ValueError(f"categories must be a list of strings, got {self.categories!r}")

    @property
    def is_top_level(self) -> bool:
        return not self.parent_id

    @property
    def effective_score_range(self) -> Tuple[float, float]:
        return tuple(self.score_range) if self.score_range else DEFAULT_SCORE_RANGE

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the prompt-set file format, omitting unset fields"""
        result = {}
        for name, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, tuple):
                value = list(value)
            result[_PROMPT_KEYS.get(name, name)] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Prompt':
        """Build a prompt from either the prompt-set file format or field names"""
        reverse = {v: k for k, v in _PROMPT_KEYS.items()}
        kwargs = {}
        for key, value in data.items():
            name = reverse.get(key, key)
            if name in cls.__dataclass_fields__:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class BoundingBox:
    """Detected object; coordinates on a 0-1000 grid in both axes"""
    box: Tuple[float, float, float, float]
    label: str

    @property
    def is_valid(self) -> bool:
        x1, y1, x2, y2 = self.box
        return x1 < x2 and y1 < y2

    def to_dict(self) -> Dict[str, Any]:
        return {'box': list(self.box), 'label': self.label}


@dataclass
class BboxChildResult:
    """Result of one fan-out child prompt for one detected object"""
    parent_box: BoundingBox
    result_data: Any = None  # str | float | None
    index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'parentBox': self.parent_box.to_dict(),
            'resultData': to_json_value(self.result_data),
            'index': self.index
        }


def match_child_result(box: BoundingBox, child_results: Sequence[BboxChildResult]) -> Optional[BboxChildResult]:
    """Join a fan-out child result back to a detection by label and coordinates"""
    for child_result in child_results:
        parent = child_result.parent_box
        if parent.label == box.label and list(parent.box) == list(box.box):
            return child_result
    return None


@dataclass
class ConversationTurn:
    question: str
    answer: str = ''

    def to_dict(self) -> Dict[str, str]:
        return {'question': self.question, 'answer': self.answer}


@dataclass
class AnalysisResult:
    """One attempt at answering a prompt for one image"""
    prompt_id: str
    status: AnalysisStatus = AnalysisStatus.LOADING
    data: Any = None
    error: Optional[str] = None
    conversation_history: List[ConversationTurn] = field(default_factory=list)
    request_payload: Optional[Dict[str, Any]] = None
    raw_response: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (AnalysisStatus.SUCCESS, AnalysisStatus.ERROR)

    def to_dict(self, include_payload: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for the HTTP layer"""
        result = {
            'promptId': self.prompt_id,
            'status': self.status.value,
            'data': to_json_value(self.data),
            'conversationHistory': [turn.to_dict() for turn in self.conversation_history]
        }
        if self.error is not None:
            result['error'] = self.error
        if include_payload:
            result['requestPayload'] = self.request_payload
            result['rawResponse'] = self.raw_response
        return result


def to_json_value(value: Any) -> Any:
    """Map result data to JSON-compatible values; NaN becomes None"""
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (BoundingBox, BboxChildResult)):
        return value.to_dict()
    if isinstance(value, list):
        return [to_json_value(item) for item in value]
    return value
