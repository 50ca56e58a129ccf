"""
Meta-prompt for generating analysis prompts from a high-level goal
"""
import json
from typing import Sequence
from core.models import ResultType

_TYPE_INSTRUCTIONS = {
    ResultType.SCORE: '- If the "type" is "score", you MUST also include a "scoreRange" property, which is an array of two numbers [min, max]. Choose a reasonable range for the prompt\'s context.',
    ResultType.CATEGORY: '- If the "type" is "category", you MUST also include a "categories" property, which is an array of 3 to 5 distinct strings representing the possible categories. Choose a relevant, non-overlapping set of categories.',
    ResultType.JSON: '- If the "type" is "json", you MUST also include a "jsonSchema" property, which is a string containing a valid, simple JSON schema that defines the structure of the expected output. The schema itself should be a JSON string.',
}

_EXAMPLE_OUTPUT = """[
  { "text": "Describe the main subject.", "type": "text" },
  { "text": "Is the image professionally taken?", "type": "yes/no" },
  { "text": "How many people are visible?", "type": "number" },
  { "text": "Rate the overall composition.", "type": "score", "scoreRange": [1, 5] },
  { "text": "What is the primary color mood?", "type": "category", "categories": ["Warm", "Cool", "Neutral", "Vibrant"] },
  { "text": "Extract details of the main product.", "type": "json", "jsonSchema": "{\\"type\\":\\"object\\",\\"properties\\":{\\"productName\\":{\\"type\\":\\"string\\"},\\"brand\\":{\\"type\\":\\"string\\"}},\\"required\\":[\\"productName\\"]}" }
]"""


def build_generation_prompt(goal: str, num_prompts: int, allowed_types: Sequence[ResultType], include_image: bool) -> str:
    allowed_values = [ResultType(t).value for t in allowed_types]
    type_instructions = '\n'.join(
        instruction for result_type, instruction in _TYPE_INSTRUCTIONS.items()
        if result_type.value in allowed_values
    )
    image_note = ("\nThe user has provided an image for context. "
                  "Your prompts should be tailored to the contents of this image.") if include_image else ''
    image_relation = ' in relation to the provided image' if include_image else ''

    return f"""You are an expert prompt engineer designing prompts for a vision-language model. Your task is to generate a set of analysis prompts based on a user's high-level goal.
{image_note}
User's Goal: "{goal}"
Number of Prompts to Generate: {num_prompts}

Instructions:
1. Generate exactly {num_prompts} prompts.
2. The prompts should be diverse and cover different aspects of the user's goal{image_relation}.
3. The output MUST be a valid JSON array of objects. Do not output any text before or after the JSON array. Do not wrap it in markdown code blocks like ```json.
4. Each object in the array must have a "text" (string) and a "type" (string) property.
5. The "type" MUST be one of the following values: {json.dumps(allowed_values)}.
6. For certain types, you must include additional properties as described:
{type_instructions}
7. Do not generate conditional prompts (i.e., do not include "parentId" or "condition" properties).
8. Do not generate "region" prompts.

Example JSON Output Structure (your output should only contain types from the allowed list):
{_EXAMPLE_OUTPUT}"""
