"""
Condition resolution: which direct children of a completed prompt may run
"""
import math
from numbers import Number
from typing import List, Sequence
from core.models import AnalysisResult, AnalysisStatus, BoundingBox, Prompt, ResultType


def yes_no_outcome(answer: str) -> str:
    """'yes' when the answer mentions yes anywhere (any case), else 'no'"""
    return 'yes' if 'yes' in answer.lower() else 'no'


def score_condition_met(prompt: Prompt, score: float) -> bool:
    """Strict comparison against the child's threshold; equality never triggers"""
    value = prompt.condition_value
    if not isinstance(value, Number) or isinstance(value, bool) or math.isnan(score):
        return False
    if prompt.condition_operator == 'above':
        return score > value
    if prompt.condition_operator == 'below':
        return score < value
    return False


def detections(result: AnalysisResult) -> List[BoundingBox]:
    if isinstance(result.data, list):
        return [box for box in result.data if isinstance(box, BoundingBox)]
    return []


def eligible_children(parent: Prompt, result: AnalysisResult, children: Sequence[Prompt]) -> List[Prompt]:
    """Children whose trigger condition is satisfied by the parent's latest result.

    Only the condition is evaluated here; whether a child already holds
    history is the caller's concern.
    """
    if result is None or result.status != AnalysisStatus.SUCCESS:
        return []

    data = result.data
    if parent.result_type == ResultType.YES_NO:
        if not isinstance(data, str):
            return []
        met = yes_no_outcome(data)
        return [child for child in children if child.condition == met]

    if parent.result_type == ResultType.SCORE:
        if not isinstance(data, Number) or isinstance(data, bool):
            return []
        return [child for child in children if score_condition_met(child, float(data))]

    if parent.result_type == ResultType.BOUNDING_BOX:
        return list(children) if detections(result) else []

    return []
