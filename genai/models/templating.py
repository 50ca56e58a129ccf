"""
Request-text construction for each result type.

Type-specific instructions are appended to the prompt text so that the
model's free-text answer can be parsed back into the prompt's result type.
"""
import json
from typing import Iterable
from core.models import Prompt, ResultType, BoundingBox


def format_coord(value) -> str:
    """Render a coordinate without a trailing '.0' for whole numbers"""
    number = float(value)
    return str(int(number)) if number.is_integer() else str(number)


def _coords(values: Iterable) -> str:
    return ', '.join(format_coord(v) for v in values)


def _region_context(prompt: Prompt) -> str:
    if prompt.result_type != ResultType.TEXT or not prompt.region_coords:
        return ''
    coords = prompt.region_coords
    if prompt.region_type == 'point':
        return (f" Focus your analysis specifically on the point located at coordinates "
                f"[{_coords(coords[:2])}] on a 1000x1000 grid of the image.")
    if prompt.region_type == 'bbox':
        return (f" Focus your analysis specifically on the content within the bounding box "
                f"defined by the coordinates [{_coords(coords[:4])}] on a 1000x1000 grid of the image.")
    return ''


def _score_instruction(prompt: Prompt) -> str:
    low, high = prompt.effective_score_range
    return f"Respond with only a single number on a scale of {format_coord(low)} to {format_coord(high)}."


def build_request_text(prompt: Prompt) -> str:
    """Build the full instruction text sent to the model for a prompt"""
    text = prompt.text
    result_type = prompt.result_type

    if result_type == ResultType.TEXT:
        return text + _region_context(prompt)
    if result_type == ResultType.SCORE:
        return f"{text} {_score_instruction(prompt)}"
    if result_type == ResultType.NUMBER:
        return f"{text} Respond with only a single number."
    if result_type == ResultType.YES_NO:
        return f'{text} Respond with only the word "Yes" or "No".'
    if result_type == ResultType.BOUNDING_BOX:
        return (f"{text} For each detected object, provide its bounding box using relative coordinates "
                f"from 0 to 1000 in an [x1, y1, x2, y2] format. If no objects are found, return an empty array. "
                f'Return ONLY a valid JSON array of objects, where each object has keys "box" '
                f'(an array of 4 numbers) and "label" (a string).')
    if result_type == ResultType.CATEGORY:
        if not prompt.categories:
            return text
        return f"{text} Respond with only one of the following categories: {json.dumps(prompt.categories)}."
    if result_type == ResultType.JSON:
        if not prompt.json_schema:
            return text
        return (f"{text} Return ONLY a valid JSON object that strictly adheres to the following schema. "
                f"Do not include any other text or markdown formatting. Schema: {prompt.json_schema}")
    return text


def build_bbox_child_text(prompt: Prompt, bbox: BoundingBox) -> str:
    """Build request text for a fan-out child, scoped to one detected object"""
    box = _coords(bbox.box)
    context = (f'Focus your answer ONLY on the object labeled "{bbox.label}" within the area '
               f'defined by the bounding box [{box}] (relative to a 1000x1000 image).')
    full_text = f"{prompt.text} {context}"
    result_type = prompt.result_type

    if result_type == ResultType.SCORE:
        return f"{full_text} {_score_instruction(prompt)}"
    if result_type == ResultType.NUMBER:
        return f"{full_text} Respond with only a single number."
    if result_type == ResultType.YES_NO:
        return f'{full_text} Respond with only the word "Yes" or "No".'
    if result_type == ResultType.BOUNDING_BOX:
        return (f"{prompt.text} Search for objects ONLY within the area defined by [{box}]. {context} "
                f'Return ONLY a valid JSON array of objects, where each object has keys "box" '
                f'(an array of 4 numbers relative to the 1000x1000 canvas) and "label" (a string).')
    return full_text
