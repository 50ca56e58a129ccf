# Copyright iX.
# SPDX-License-Identifier: MIT-0
"""
Client for OpenAI-compatible chat-completions endpoints serving vision models.

Supports single-shot requests and server-sent-event streaming. Blocking HTTP
calls run in a worker thread so that many requests can be in flight at once
and an awaiting task can be cancelled at any suspension point.
"""
import json
import asyncio
import requests
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple
from common.logger import setup_logger
from core.models import Prompt, ResultType, BoundingBox, BboxChildResult, ConversationTurn
from genai.models import TransportError, TruncationError, ParseError
from genai.models.thinking import ThinkingStreamDecoder, strip_thinking
from genai.models.coercion import coerce_response, coerce_bbox_child_response, parse_json_content
from genai.models.templating import build_request_text, build_bbox_child_text
from . import LLMAPIProvider

logger = setup_logger('genai')

TRUNCATION_MESSAGE = "Response was truncated due to token limit."


class ChatCompletionsProvider(LLMAPIProvider):
    """Vision model provider for the OpenAI chat-completions wire format"""

    def _validate_config(self) -> None:
        if not self.settings.api_endpoint:
            raise ValueError("Model API endpoint must be configured")
        if not self.settings.model_name:
            raise ValueError("Model name must be configured")

    # ─── Request construction ────────────────────────────────────────────

    @staticmethod
    def build_messages(
        request_text: str,
        image_data_uri: str,
        conversation: Optional[Sequence[ConversationTurn]] = None,
        follow_up: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Build the message list: a multimodal user message, then for
        follow-ups the prior turns as alternating user/assistant messages
        and the new question.
        """
        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": request_text},
                {"type": "image_url", "image_url": {"url": image_data_uri}}
            ]
        }]

        if follow_up:
            for index, turn in enumerate(conversation or []):
                # The opening question is already carried by the multimodal message
                if not (index == 0 and turn.question == request_text):
                    messages.append({"role": "user", "content": turn.question})
                messages.append({"role": "assistant", "content": turn.answer})
            messages.append({"role": "user", "content": follow_up})

        return messages

    def build_payload(
        self,
        messages: List[Dict[str, Any]],
        stream: bool,
        max_tokens: Optional[int] = None
    ) -> Dict[str, Any]:
        body = {
            "model": self.settings.model_name,
            "messages": messages,
            "stream": stream,
        }
        if max_tokens := max_tokens or self.settings.max_tokens:
            body["max_tokens"] = max_tokens
        if self.settings.temperature is not None:
            body["temperature"] = self.settings.temperature
        return body

    def build_request(
        self,
        prompt: Prompt,
        image_data_uri: str,
        conversation: Optional[Sequence[ConversationTurn]] = None,
        follow_up: Optional[str] = None
    ) -> Dict[str, Any]:
        """Request payload for a prompt; Text prompts are streamed"""
        messages = self.build_messages(build_request_text(prompt), image_data_uri, conversation, follow_up)
        return self.build_payload(messages, stream=prompt.result_type == ResultType.TEXT)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    # ─── Transport ───────────────────────────────────────────────────────

    def _post(self, body: str, stream: bool = False) -> requests.Response:
        """Make HTTP request (synchronous, called from thread pool)"""
        return requests.post(
            self.settings.api_endpoint,
            data=body,
            headers=self._headers(),
            stream=stream,
            timeout=self.settings.request_timeout
        )

    async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send a non-streaming request and return the JSON body"""
        body = json.dumps(payload)
        logger.debug(f"POST {self.settings.api_endpoint} model={self.settings.model_name} stream=False")
        try:
            response = await asyncio.to_thread(self._post, body)
        except requests.RequestException as e:
            raise TransportError(f"Request to model endpoint failed: {e}", detail=repr(e))

        if response.status_code != 200:
            logger.error(f"Model endpoint error: {response.status_code} - {response.text[:500]}")
            raise TransportError(
                f"API request failed with status {response.status_code}",
                detail=response.text
            )
        try:
            return response.json()
        except ValueError as e:
            raise TransportError("Model endpoint returned a non-JSON body", detail=str(e))

    async def _request_stream(self, payload: Dict[str, Any]) -> AsyncIterator[str]:
        """Send a streaming request and yield raw SSE lines"""
        body = json.dumps(payload)
        logger.debug(f"POST {self.settings.api_endpoint} model={self.settings.model_name} stream=True")
        try:
            response = await asyncio.to_thread(self._post, body, True)
        except requests.RequestException as e:
            raise TransportError(f"Request to model endpoint failed: {e}", detail=repr(e))

        try:
            if response.status_code != 200:
                logger.error(f"Model endpoint error: {response.status_code}")
                raise TransportError(f"API request failed with status {response.status_code}")

            response.encoding = 'utf-8'
            lines = response.iter_lines(decode_unicode=True)
            while True:
                try:
                    line = await asyncio.to_thread(next, lines, None)
                except requests.RequestException as e:
                    raise TransportError(f"Stream interrupted: {e}", detail=repr(e))
                if line is None:
                    break
                yield line
        finally:
            response.close()

    # ─── Generation ──────────────────────────────────────────────────────

    async def generate_content(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Single-shot generation; raises TruncationError on a length stop"""
        data = await self._request(payload)
        if _first_choice(data).get('finish_reason') == 'length':
            raise TruncationError(TRUNCATION_MESSAGE)
        return data

    async def generate_stream(self, payload: Dict[str, Any]) -> AsyncIterator[str]:
        """Streaming generation yielding visible (post-thinking) text deltas"""
        decoder = ThinkingStreamDecoder()
        lines = self._request_stream(payload)

        try:
            async for line in lines:
                if not line or not line.startswith('data: '):
                    continue
                data_str = line[6:]
                if data_str.strip() == '[DONE]':
                    break
                try:
                    chunk = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.warning(f"Failed to parse stream chunk: {data_str[:200]}")
                    continue

                choice = _first_choice(chunk)
                if choice.get('finish_reason') == 'length':
                    raise TruncationError(TRUNCATION_MESSAGE)
                delta = (choice.get('delta') or {}).get('content') or ''
                if visible := decoder.feed(delta):
                    yield visible
        finally:
            await lines.aclose()

        if tail := decoder.flush():
            yield tail

    @staticmethod
    def message_content(data: Dict[str, Any]) -> str:
        """Extract and strip thinking from choices[0].message.content"""
        try:
            content = _first_choice(data)['message']['content']
        except (KeyError, TypeError):
            raise TransportError("Model response has no message content", detail=json.dumps(data)[:500])
        return strip_thinking(content or '')

    async def generate_typed(self, payload: Dict[str, Any], result_type: ResultType) -> Tuple[Any, Dict[str, Any]]:
        """Single-shot generation coerced to a result type

        Returns:
            Tuple of (parsed data, raw response)
        """
        raw = await self.generate_content(payload)
        return coerce_response(self.message_content(raw), result_type), raw

    async def analyze_bbox_child(
        self,
        prompt: Prompt,
        bbox: BoundingBox,
        image_data_uri: str,
        index: Optional[int] = None
    ) -> BboxChildResult:
        """Run one fan-out child prompt for one detected object.

        Failures are captured in the result rather than raised so that one
        object does not fail the whole batch.
        """
        try:
            request_text = build_bbox_child_text(prompt, bbox)
            payload = self.build_payload(self.build_messages(request_text, image_data_uri), stream=False)
            raw = await self.generate_content(payload)
            data = coerce_bbox_child_response(self.message_content(raw), prompt.result_type)
            return BboxChildResult(parent_box=bbox, result_data=data, index=index)
        except Exception as e:
            logger.error(f"Bbox child prompt error for '{prompt.text}' on box '{bbox.label}': {e}")
            return BboxChildResult(parent_box=bbox, result_data=f"Error: {e}", index=index)

    async def generate_prompts(
        self,
        goal: str,
        num_prompts: int,
        allowed_types: Sequence[ResultType],
        image_data_uri: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Ask the model to design analysis prompts for a goal

        Returns:
            List of prompt dicts with at least "text" and "type"
        """
        from genai.models.meta_prompts import build_generation_prompt

        allowed = [ResultType(t) for t in allowed_types]
        content = [{"type": "text", "text": build_generation_prompt(goal, num_prompts, allowed, bool(image_data_uri))}]
        if image_data_uri:
            content.append({"type": "image_url", "image_url": {"url": image_data_uri}})

        payload = self.build_payload(
            [{"role": "user", "content": content}],
            stream=False,
            max_tokens=self.settings.max_tokens or 4096
        )
        try:
            raw = await self.generate_content(payload)
        except TruncationError:
            raise TruncationError(
                "Response truncated: The model hit the maximum token limit. "
                "Consider increasing the max tokens setting."
            )

        try:
            parsed = parse_json_content(self.message_content(raw))
        except ParseError as e:
            logger.error(f"Failed to parse generated prompts: {e.detail}")
            raise ParseError("The AI returned an invalid format. Please try again.", detail=e.detail)

        allowed_values = {t.value for t in allowed}
        if not isinstance(parsed, list) or not all(
            isinstance(p, dict) and isinstance(p.get('text'), str) and p.get('type') in allowed_values
            for p in parsed
        ):
            raise ParseError("The AI returned data in an unexpected structure.", detail=repr(parsed)[:500])
        return parsed


def _first_choice(data: Dict[str, Any]) -> Dict[str, Any]:
    choices = data.get('choices') if isinstance(data, dict) else None
    if not choices:
        return {}
    return choices[0] or {}
