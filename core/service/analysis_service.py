# Copyright iX.
# SPDX-License-Identifier: MIT-0
"""
Execution engine for conditional prompt trees against a vision model.

Independent prompts run one at a time; when a prompt finishes, its direct
children are checked against their trigger conditions and the eligible ones
run through the same path, so chains of any depth resolve. Children of a
BoundingBox prompt fan out: one concurrent request per detected object.

Every attempt for an (image, prompt) pair runs as its own task registered in
``_in_flight``. Starting a new attempt for the same pair cancels the previous
one first; a cancelled attempt rolls back its history entry and is reported
to callers as ``None``.
"""
import json
import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from core.models import (
    AnalysisResult, AnalysisStatus, BoundingBox, ConversationTurn, Prompt, ResultType, to_json_value
)
from core.prompt_tree import PromptTree, new_prompt_id
from core.result_store import ResultHistoryStore
from core.image_source import ImageSource
from core.conditions import eligible_children, detections
from genai.models import AbortedError, ParseError
from genai.models.templating import build_request_text
from . import BaseService, logger

PairKey = Tuple[str, str]


class ProgressSink:
    """Receives observational progress; never used for control flow"""

    def on_progress(self, current: int, total: int) -> None:
        logger.debug(f"Progress {current}/{total}")

    def on_image_status(self, image_id: str, status: AnalysisStatus) -> None:
        logger.debug(f"Image {image_id} -> {status.value}")


class AnalysisService(BaseService):
    """Runs prompt trees for images and records every attempt in a result history store"""

    def __init__(
        self,
        module_name: str = 'analysis',
        prompt_tree: Optional[PromptTree] = None,
        image_source: Optional[ImageSource] = None,
        result_store: Optional[ResultHistoryStore] = None,
        progress_sink: Optional[ProgressSink] = None,
        **kwargs
    ):
        super().__init__(module_name=module_name, **kwargs)
        self.prompt_tree = prompt_tree if prompt_tree is not None else PromptTree.with_defaults()
        self.images = image_source or ImageSource()
        self.results = result_store or ResultHistoryStore()
        self.progress_sink = progress_sink or ProgressSink()

        self.image_status: Dict[str, AnalysisStatus] = {}
        self.is_analyzing = False
        self.progress: Optional[Dict[str, int]] = None

        self._in_flight: Dict[PairKey, asyncio.Task] = {}
        self._aborted: Set[asyncio.Task] = set()

    # ─── In-flight registry ──────────────────────────────────────────────

    def _cancel_in_flight(self, key: PairKey) -> Optional[asyncio.Task]:
        task = self._in_flight.get(key)
        if task is None or task.done():
            return None
        self._aborted.add(task)
        task.cancel()
        return task

    async def _supersede(self, key: PairKey) -> None:
        """Cancel the running attempt for a pair and wait until it has rolled back"""
        # A newer attempt may have been registered while we waited
        while task := self._cancel_in_flight(key):
            logger.info(f"Superseding in-flight attempt for image={key[0]} prompt={key[1]}")
            await asyncio.wait({task})

    async def _launch(self, image_id: str, prompt_id: str, attempt: Awaitable) -> AnalysisResult:
        """Run one attempt for a pair as a registered, cancellable task

        Raises:
            AbortedError: The attempt was superseded or cancelled
        """
        key = (image_id, prompt_id)
        await self._supersede(key)

        task = asyncio.ensure_future(attempt)
        self._in_flight[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._aborted:
                raise AbortedError(f"Attempt for prompt {prompt_id} on image {image_id} was aborted")
            raise
        finally:
            self._aborted.discard(task)
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

    def is_running(self, image_id: str, prompt_id: str) -> bool:
        task = self._in_flight.get((image_id, prompt_id))
        return task is not None and not task.done()

    def cancel(self, image_id: str, prompt_id: str) -> bool:
        """Abort the in-flight attempt for a pair; leaves no trace in history"""
        return self._cancel_in_flight((image_id, prompt_id)) is not None

    # ─── Helpers ─────────────────────────────────────────────────────────

    def _require_image(self, image_id: str) -> None:
        if image_id not in self.images:
            raise KeyError(f"Image not found: {image_id}")

    def _image_uri(self, image_id: str) -> str:
        try:
            return self.images.get_data_uri(image_id)
        except KeyError:
            raise AbortedError(f"Image {image_id} was removed")

    def _report_progress(self, current: int, total: int) -> None:
        self.progress = {'current': current, 'total': total}
        self.progress_sink.on_progress(current, total)

    def _set_image_status(self, image_id: str, status: AnalysisStatus) -> None:
        self.image_status[image_id] = status
        self.progress_sink.on_image_status(image_id, status)

    def _pending_children(self, prompt: Prompt, image_id: str) -> List[Prompt]:
        return [c for c in self.prompt_tree.children(prompt.id) if not self.results.has_history(image_id, c.id)]

    def _still_pending(self, image_id: str, prompt_id: str) -> bool:
        """Prompt and image still exist and the pair has no history yet"""
        return (prompt_id in self.prompt_tree and image_id in self.images
                and not self.results.has_history(image_id, prompt_id))

    # ─── Attempts ────────────────────────────────────────────────────────

    async def _run_attempt(self, provider, prompt: Prompt, image_id: str) -> AnalysisResult:
        """Execute one prompt against one image, streaming Text prompts"""
        image_uri = self._image_uri(image_id)
        payload = None
        current = self.results.append(
            image_id, prompt.id,
            AnalysisResult(prompt_id=prompt.id, status=AnalysisStatus.LOADING)
        )
        try:
            request_text = build_request_text(prompt)
            payload = provider.build_request(prompt, image_uri)
            current = self.results.replace_latest(image_id, prompt.id, replace(current, request_payload=payload))

            if prompt.result_type == ResultType.TEXT:
                answer = ''
                async for delta in provider.generate_stream(payload):
                    answer += delta
                    current = self.results.replace_latest(image_id, prompt.id, replace(current, data=answer))
                answer = answer.strip()
                data = answer
                raw = {'type': 'streamed_text', 'content': answer}
            else:
                data, raw = await provider.generate_typed(payload, prompt.result_type)
                answer = json.dumps(to_json_value(data))

            current = self.results.replace_latest(image_id, prompt.id, replace(
                current,
                status=AnalysisStatus.SUCCESS,
                data=data,
                conversation_history=[ConversationTurn(question=request_text, answer=answer)],
                raw_response=raw
            ))
            logger.info(f"Prompt {prompt.id} succeeded on image {image_id}")
            return current

        except asyncio.CancelledError:
            self.results.discard(image_id, prompt.id, current)
            raise
        except Exception as e:
            logger.error(f"Analysis error for prompt '{prompt.text}' on image {image_id}: {e}")
            return self.results.replace_latest(image_id, prompt.id, AnalysisResult(
                prompt_id=prompt.id,
                status=AnalysisStatus.ERROR,
                error=str(e),
                request_payload=payload
            ))

    async def _run_fan_out(self, provider, prompt: Prompt, boxes: Sequence[BoundingBox], image_id: str) -> AnalysisResult:
        """Run a child of a BoundingBox prompt once per detected object, concurrently"""
        image_uri = self._image_uri(image_id)
        current = self.results.append(
            image_id, prompt.id,
            AnalysisResult(prompt_id=prompt.id, status=AnalysisStatus.LOADING, data=[])
        )
        try:
            child_results = await asyncio.gather(*(
                provider.analyze_bbox_child(prompt, box, image_uri, index=index)
                for index, box in enumerate(boxes)
            ))
        except asyncio.CancelledError:
            self.results.discard(image_id, prompt.id, current)
            raise

        logger.info(f"Fan-out prompt {prompt.id} finished {len(child_results)} objects on image {image_id}")
        return self.results.replace_latest(
            image_id, prompt.id,
            replace(current, status=AnalysisStatus.SUCCESS, data=list(child_results))
        )

    async def _run_follow_up(self, provider, prompt: Prompt, image_id: str, question: str) -> AnalysisResult:
        """Stream an answer to a follow-up question as a new conversation turn"""
        image_uri = self._image_uri(image_id)
        previous = self.results.latest(image_id, prompt.id)
        if previous is None:
            raise AbortedError(f"History for prompt {prompt.id} was cleared")

        turns = list(previous.conversation_history)
        payload = provider.build_request(prompt, image_uri, turns, question)
        current = self.results.replace_latest(image_id, prompt.id, replace(
            previous,
            conversation_history=turns + [ConversationTurn(question=question)],
            request_payload=payload
        ))
        try:
            answer = ''
            async for delta in provider.generate_stream(payload):
                answer += delta
                current = self.results.replace_latest(image_id, prompt.id, replace(
                    current, conversation_history=turns + [ConversationTurn(question=question, answer=answer)]
                ))
            answer = answer.strip()
            return self.results.replace_latest(image_id, prompt.id, replace(
                current,
                status=AnalysisStatus.SUCCESS,
                error=None,
                conversation_history=turns + [ConversationTurn(question=question, answer=answer)],
                raw_response={'type': 'streamed_text', 'content': answer}
            ))

        except asyncio.CancelledError:
            self.results.restore(image_id, prompt.id, previous, current)
            raise
        except Exception as e:
            logger.error(f"Follow-up error for prompt {prompt.id} on image {image_id}: {e}")
            return self.results.replace_latest(image_id, prompt.id, replace(
                previous, status=AnalysisStatus.ERROR, error=str(e), request_payload=payload
            ))

    # ─── Dependency resolution ───────────────────────────────────────────

    async def _run_and_cascade(self, provider, prompt: Prompt, image_id: str) -> Optional[AnalysisResult]:
        """Run a prompt, then whichever of its children its result makes eligible"""
        try:
            result = await self._launch(image_id, prompt.id, self._run_attempt(provider, prompt, image_id))
        except AbortedError as e:
            logger.info(str(e))
            return None
        await self._handle_completion(provider, prompt, result, image_id)
        return result

    async def _handle_completion(self, provider, prompt: Prompt, result: Optional[AnalysisResult], image_id: str) -> None:
        """Evaluate a finished prompt's children and run the eligible pending ones"""
        if result is None or result.status != AnalysisStatus.SUCCESS:
            return

        eligible = eligible_children(prompt, result, self._pending_children(prompt, image_id))
        if not eligible:
            return
        logger.debug(f"Prompt {prompt.id} enables {len(eligible)} children on image {image_id}")

        if prompt.result_type == ResultType.BOUNDING_BOX:
            boxes = detections(result)
            for child in eligible:
                if not self._still_pending(image_id, child.id):
                    continue
                try:
                    await self._launch(image_id, child.id, self._run_fan_out(provider, child, boxes, image_id))
                except AbortedError as e:
                    logger.info(str(e))
            return

        for child in eligible:
            # Earlier siblings may have produced history for this child meanwhile
            if not self._still_pending(image_id, child.id):
                continue
            await self._run_and_cascade(provider, child, image_id)

    def _parent_detections(self, prompt: Prompt, image_id: str) -> Optional[List[BoundingBox]]:
        """Detections of a BoundingBox parent's latest successful result, else None"""
        parent = self.prompt_tree.get(prompt.parent_id) if prompt.parent_id else None
        if parent is None or parent.result_type != ResultType.BOUNDING_BOX:
            return None
        latest = self.results.latest(image_id, parent.id)
        if latest is None or latest.status != AnalysisStatus.SUCCESS:
            return None
        return detections(latest)

    def _pending_tasks(self, image_id: str) -> List[Prompt]:
        """Pending top-level prompts, then completed parents that still have pending children"""
        pending = [p for p in self.prompt_tree if not self.results.has_history(image_id, p.id)]
        tasks: Dict[str, Prompt] = {p.id: p for p in pending if p.is_top_level}

        for child in pending:
            if child.is_top_level:
                continue
            latest = self.results.latest(image_id, child.parent_id)
            if latest is not None and latest.status == AnalysisStatus.SUCCESS:
                tasks.setdefault(child.parent_id, self.prompt_tree.require(child.parent_id))
        return list(tasks.values())

    async def _run_pending(self, provider, image_id: str, report_progress: bool) -> None:
        tasks = self._pending_tasks(image_id)
        for index, prompt in enumerate(tasks, 1):
            if image_id not in self.images:
                logger.warning(f"Image {image_id} removed during analysis, stopping")
                return
            if report_progress:
                self._report_progress(index, len(tasks))
            if prompt.id not in self.prompt_tree:
                continue

            latest = self.results.latest(image_id, prompt.id)
            if latest is None:
                await self._run_and_cascade(provider, prompt, image_id)
            elif latest.status == AnalysisStatus.SUCCESS:
                # Parent already done: only give its new children a chance to run
                await self._handle_completion(provider, prompt, latest, image_id)

    def _aggregate_status(self, image_id: str) -> AnalysisStatus:
        for prompt in self.prompt_tree.top_level():
            latest = self.results.latest(image_id, prompt.id)
            if latest is not None and latest.status == AnalysisStatus.ERROR:
                return AnalysisStatus.ERROR
        return AnalysisStatus.SUCCESS

    # ─── Public operations ───────────────────────────────────────────────

    async def run_one(self, prompt_id: str, image_id: str) -> Optional[AnalysisResult]:
        """Explicitly (re-)run one prompt for one image.

        Clears the stored history of every descendant first, then runs the
        prompt and cascades into its eligible children.
        A child of a BoundingBox prompt with a completed result is fanned out
        again over that result's detections.

        Returns:
            The prompt's terminal result, or None when the attempt was aborted
        """
        prompt = self.prompt_tree.require(prompt_id)
        self._require_image(image_id)
        provider = self._get_model_provider()

        descendants = self.prompt_tree.descendants(prompt.id)
        for descendant_id in descendants:
            await self._supersede((image_id, descendant_id))
        self.results.clear(image_id, descendants)

        logger.info(f"Running prompt {prompt.id} on image {image_id}")
        boxes = self._parent_detections(prompt, image_id)
        if boxes is not None:
            try:
                return await self._launch(image_id, prompt.id, self._run_fan_out(provider, prompt, boxes, image_id))
            except AbortedError as e:
                logger.info(str(e))
                return None
        return await self._run_and_cascade(provider, prompt, image_id)

    async def run_pending_for_image(self, image_id: str) -> Dict[str, List[AnalysisResult]]:
        """Run every prompt of one image that has no history yet

        Returns:
            Result histories of the image after the run
        """
        self._require_image(image_id)
        provider = self._get_model_provider()

        self.is_analyzing = True
        try:
            await self._run_pending(provider, image_id, report_progress=True)
        finally:
            self.is_analyzing = False
            self.progress = None
        return self.results.image_results(image_id)

    async def run_for_all_images(self, image_ids: Optional[Iterable[str]] = None) -> Dict[str, AnalysisStatus]:
        """Run the pending algorithm image by image, strictly in order

        Returns:
            Aggregate status per image
        """
        image_ids = list(image_ids) if image_ids is not None else self.images.image_ids()
        provider = self._get_model_provider()
        statuses: Dict[str, AnalysisStatus] = {}

        self.is_analyzing = True
        try:
            for index, image_id in enumerate(image_ids, 1):
                self._report_progress(index, len(image_ids))
                if image_id not in self.images:
                    logger.warning(f"Skipping unknown image {image_id}")
                    continue

                self._set_image_status(image_id, AnalysisStatus.LOADING)
                await self._run_pending(provider, image_id, report_progress=False)
                if image_id not in self.images:
                    continue
                statuses[image_id] = self._aggregate_status(image_id)
                self._set_image_status(image_id, statuses[image_id])
        finally:
            self.is_analyzing = False
            self.progress = None

        logger.info(f"Analyzed {len(statuses)} images")
        return statuses

    async def send_follow_up(self, prompt_id: str, image_id: str, question: str) -> Optional[AnalysisResult]:
        """Ask a follow-up question about a Text prompt's latest answer

        Raises:
            ValueError: Prompt is not a Text prompt, has no result yet, or the question is empty
        """
        prompt = self.prompt_tree.require(prompt_id)
        self._require_image(image_id)
        if prompt.result_type != ResultType.TEXT:
            raise ValueError("Follow-up questions are only supported for text prompts")
        if not self.results.has_history(image_id, prompt.id):
            raise ValueError(f"Prompt {prompt.id} has no result on image {image_id} yet")
        if not (question := (question or '').strip()):
            raise ValueError("Follow-up question must not be empty")

        provider = self._get_model_provider()
        try:
            return await self._launch(image_id, prompt.id, self._run_follow_up(provider, prompt, image_id, question))
        except AbortedError as e:
            logger.info(str(e))
            return None

    def delete_prompt(self, prompt_id: str) -> List[str]:
        """Delete a prompt with its descendants and their results on every image

        Returns:
            Ids of every deleted prompt
        """
        deleted = self.prompt_tree.delete_prompt(prompt_id)
        for image_id, pid in list(self._in_flight):
            if pid in deleted:
                self._cancel_in_flight((image_id, pid))
        self.results.clear_prompts(deleted)
        logger.info(f"Deleted prompts {deleted}")
        return deleted

    def replace_prompts(self, prompts: Iterable[Prompt]) -> List[str]:
        """Swap in a whole prompt set, dropping results of prompts that are gone

        Returns:
            Ids of the prompts that were removed
        """
        prompts = list(prompts)
        kept = {p.id for p in prompts}
        removed = [p.id for p in self.prompt_tree if p.id not in kept]
        self.prompt_tree.set_prompts(prompts)

        for image_id, pid in list(self._in_flight):
            if pid in removed:
                self._cancel_in_flight((image_id, pid))
        self.results.clear_prompts(removed)
        logger.info(f"Loaded {len(prompts)} prompts, removed {len(removed)}")
        return removed

    def remove_image(self, image_id: str) -> bool:
        """Forget an image: abort its attempts, drop its results and cached encoding"""
        for key in list(self._in_flight):
            if key[0] == image_id:
                self._cancel_in_flight(key)
        self.results.remove_image(image_id)
        self.image_status.pop(image_id, None)
        return self.images.remove_image(image_id)

    async def generate_prompts(
        self,
        goal: str,
        num_prompts: int,
        allowed_types: Sequence[ResultType],
        image_id: Optional[str] = None,
        replace_existing: bool = False
    ) -> List[Prompt]:
        """Have the model design top-level prompts for a goal and add them to the tree"""
        if not goal or not goal.strip():
            raise ValueError("A goal is required to generate prompts")
        if num_prompts < 1:
            raise ValueError("num_prompts must be at least 1")
        if image_id is not None:
            self._require_image(image_id)

        provider = self._get_model_provider()
        image_uri = self.images.get_data_uri(image_id) if image_id else None
        items = await provider.generate_prompts(goal.strip(), num_prompts, allowed_types, image_uri)

        try:
            generated = [Prompt.from_dict(_top_level_fields(item)) for item in items]
        except (TypeError, ValueError) as e:
            raise ParseError("The AI returned prompts with invalid fields.", detail=str(e))
        if replace_existing:
            self.replace_prompts(generated)
        else:
            self.prompt_tree.set_prompts(self.prompt_tree.prompts + generated)

        logger.info(f"Generated {len(generated)} prompts for goal '{goal.strip()}'")
        return generated


def _top_level_fields(item: Dict[str, Any]) -> Dict[str, Any]:
    """Keep generated prompts free of conditions and regions, with a fresh id"""
    dropped = {'id', 'parentId', 'condition', 'scoreConditionOperator', 'scoreConditionValue',
               'regionType', 'regionCoords'}
    fields = {k: v for k, v in item.items() if k not in dropped}
    fields['id'] = new_prompt_id()
    return fields
