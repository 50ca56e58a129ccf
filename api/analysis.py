# Copyright iX.
# SPDX-License-Identifier: MIT-0
import os
import uuid
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional
from fastapi import APIRouter, HTTPException, UploadFile, File
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from ag_ui.core import (
    RunStartedEvent, RunFinishedEvent, RunErrorEvent, StateSnapshotEvent,
    TextMessageStartEvent, TextMessageContentEvent, TextMessageEndEvent,
)
from ag_ui.encoder import EventEncoder
from core.config import env_config
from core.models import AnalysisResult, AnalysisStatus, ResultType
from core.prompt_tree import PromptTree, PromptTreeError
from core.service.service_factory import ServiceFactory
from genai.models import LLMProviderError
from common.logger import setup_logger

logger = setup_logger('api.analysis')

router = APIRouter(prefix="/analysis", tags=["analysis"])

_analysis_service = None
_enc = EventEncoder()

UPLOAD_DIR = env_config.storage_config['upload_dir']

ALLOWED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp'}


def get_analysis_service():
    global _analysis_service
    if _analysis_service is None:
        _analysis_service = ServiceFactory.create_analysis_service('analysis')
    return _analysis_service


class PromptCreate(BaseModel):
    text: str = ''
    type: ResultType = ResultType.TEXT
    parent_id: Optional[str] = None
    fields: Dict[str, Any] = {}


class PromptUpdate(BaseModel):
    changes: Dict[str, Any]


class PromptMove(BaseModel):
    target_id: str


class FollowUp(BaseModel):
    question: str


class RunAll(BaseModel):
    image_ids: Optional[List[str]] = None


class GenerateRequest(BaseModel):
    goal: str
    num_prompts: int = 5
    allowed_types: List[ResultType] = list(ResultType)
    image_id: Optional[str] = None
    replace: bool = False


def _require(image_id: Optional[str] = None, prompt_id: Optional[str] = None) -> None:
    service = get_analysis_service()
    if prompt_id is not None and prompt_id not in service.prompt_tree:
        raise HTTPException(status_code=404, detail=f"Prompt not found: {prompt_id}")
    if image_id is not None and image_id not in service.images:
        raise HTTPException(status_code=404, detail=f"Image not found: {image_id}")


def _history_snapshot(image_id: str, prompt_id: str, history, include_payload: bool = False) -> Dict[str, Any]:
    service = get_analysis_service()
    return {
        "image_id": image_id,
        "prompt_id": prompt_id,
        "history": [r.to_dict(include_payload) for r in history],
        "is_analyzing": service.is_analyzing,
        "progress": service.progress,
    }


# ─── Prompts ─────────────────────────────────────────────────────────────

@router.get("/prompts")
async def list_prompts():
    return {"prompts": get_analysis_service().prompt_tree.to_dicts()}


@router.post("/prompts")
async def add_prompt(body: PromptCreate):
    service = get_analysis_service()
    try:
        prompt = service.prompt_tree.add_prompt(
            parent_id=body.parent_id, text=body.text, result_type=body.type, **body.fields
        )
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "prompt": prompt.to_dict()}


@router.patch("/prompts/{prompt_id}")
async def update_prompt(prompt_id: str, body: PromptUpdate):
    _require(prompt_id=prompt_id)
    try:
        prompt = get_analysis_service().prompt_tree.update_prompt(prompt_id, **body.changes)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "prompt": prompt.to_dict()}


@router.delete("/prompts/{prompt_id}")
async def delete_prompt(prompt_id: str, confirm: bool = False):
    """Delete a prompt; prompts with children need confirm=true"""
    _require(prompt_id=prompt_id)
    service = get_analysis_service()
    if service.prompt_tree.children(prompt_id) and not confirm:
        raise HTTPException(
            status_code=409,
            detail="This prompt has child prompts. Deleting it will also delete all of its children."
        )
    return {"ok": True, "deleted": service.delete_prompt(prompt_id)}


@router.post("/prompts/{prompt_id}/move")
async def move_prompt(prompt_id: str, body: PromptMove):
    moved = get_analysis_service().prompt_tree.move_prompt(prompt_id, body.target_id)
    return {"ok": moved}


@router.get("/prompts/export")
async def export_prompts():
    return get_analysis_service().prompt_tree.to_dicts()


@router.post("/prompts/import")
async def import_prompts(items: List[Dict[str, Any]]):
    try:
        tree = PromptTree.from_dicts(items)
    except PromptTreeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    removed = get_analysis_service().replace_prompts(tree.prompts)
    return {"ok": True, "count": len(tree), "removed": removed}


@router.post("/prompts/generate")
async def generate_prompts(body: GenerateRequest):
    """Have the model design prompts for a goal"""
    if body.image_id is not None:
        _require(image_id=body.image_id)
    try:
        prompts = await get_analysis_service().generate_prompts(
            body.goal, body.num_prompts, body.allowed_types,
            image_id=body.image_id, replace_existing=body.replace
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LLMProviderError as e:
        logger.error(f"Prompt generation failed: {e}")
        return {"ok": False, "error": str(e), "error_code": e.error_code}
    return {"ok": True, "prompts": [p.to_dict() for p in prompts]}


# ─── Images & results ────────────────────────────────────────────────────

@router.post("/images")
async def upload_image(file: UploadFile = File(...)):
    """Store an uploaded image and register it for analysis"""
    ext = os.path.splitext(file.filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        return {"ok": False, "error": f"Unsupported file type: {ext}"}

    image_id = uuid.uuid4().hex
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    path = os.path.join(UPLOAD_DIR, f"{image_id}{ext}")
    content = await file.read()
    with open(path, "wb") as out:
        out.write(content)

    get_analysis_service().images.add_image(image_id, path)
    return {"ok": True, "image_id": image_id, "name": file.filename}


@router.get("/images")
async def list_images():
    service = get_analysis_service()
    return {
        "images": [
            {"image_id": image_id, "status": service.image_status.get(image_id, AnalysisStatus.IDLE).value}
            for image_id in service.images.image_ids()
        ]
    }


@router.delete("/images/{image_id}")
async def remove_image(image_id: str):
    _require(image_id=image_id)
    return {"ok": get_analysis_service().remove_image(image_id)}


@router.get("/images/{image_id}/results")
async def get_results(image_id: str, include_payload: bool = False):
    _require(image_id=image_id)
    results = get_analysis_service().results.image_results(image_id)
    return {
        "image_id": image_id,
        "results": {
            prompt_id: [r.to_dict(include_payload) for r in history]
            for prompt_id, history in results.items()
        }
    }


@router.post("/images/{image_id}/prompts/{prompt_id}/cancel")
async def cancel_run(image_id: str, prompt_id: str):
    return {"ok": get_analysis_service().cancel(image_id, prompt_id)}


# ─── Run operations (AG-UI SSE) ──────────────────────────────────────────

def _log_task_outcome(task: asyncio.Task) -> None:
    if not task.cancelled() and (e := task.exception()):
        logger.error(f"Analysis run failed: {e}")


def _event_response(
    thread_id: str,
    operation: Callable[[], Awaitable[Any]],
    image_id: Optional[str] = None,
    follow_up_prompt_id: Optional[str] = None,
) -> StreamingResponse:
    """Run an engine operation and stream every result-history update as AG-UI events.

    The operation keeps running if the client disconnects; its results stay
    readable through the results endpoint.
    """
    run_id = str(uuid.uuid4())
    msg_id = str(uuid.uuid4()) if follow_up_prompt_id else None

    async def event_stream():
        service = get_analysis_service()
        queue: asyncio.Queue = asyncio.Queue()

        def on_update(img: str, pid: str, history) -> None:
            if image_id is None or img == image_id:
                queue.put_nowait((img, pid, history))

        unsubscribe = service.results.subscribe(on_update)
        task = asyncio.ensure_future(operation())
        task.add_done_callback(_log_task_outcome)
        sent_answer = ''

        try:
            yield _enc.encode(RunStartedEvent(thread_id=thread_id, run_id=run_id))
            if msg_id:
                yield _enc.encode(TextMessageStartEvent(message_id=msg_id, role="assistant"))

            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    if queue.empty():
                        break
                    continue
                img, pid, history = getter.result()

                if msg_id and pid == follow_up_prompt_id and history and history[-1].conversation_history:
                    answer = history[-1].conversation_history[-1].answer
                    if answer.startswith(sent_answer) and len(answer) > len(sent_answer):
                        yield _enc.encode(TextMessageContentEvent(message_id=msg_id, delta=answer[len(sent_answer):]))
                        sent_answer = answer

                yield _enc.encode(StateSnapshotEvent(snapshot=_history_snapshot(img, pid, history)))

            if msg_id:
                yield _enc.encode(TextMessageEndEvent(message_id=msg_id))

            outcome = task.result()
            yield _enc.encode(StateSnapshotEvent(snapshot={"outcome": _outcome_json(outcome)}))
            yield _enc.encode(RunFinishedEvent(thread_id=thread_id, run_id=run_id))

        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}", exc_info=True)
            yield _enc.encode(RunErrorEvent(message=str(e)))
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _outcome_json(outcome: Any) -> Any:
    """JSON form of a run operation's return value"""
    if outcome is None:
        return {"aborted": True}
    if isinstance(outcome, AnalysisResult):
        return outcome.to_dict()
    result = {}
    for key, value in outcome.items():
        if isinstance(value, AnalysisStatus):
            result[key] = value.value
        else:
            result[key] = [r.to_dict() for r in value]
    return result


@router.post("/images/{image_id}/prompts/{prompt_id}/run")
async def run_one(image_id: str, prompt_id: str):
    """Re-run one prompt (clearing its descendants' results) and cascade"""
    _require(image_id=image_id, prompt_id=prompt_id)
    service = get_analysis_service()
    return _event_response(
        f"analysis-{image_id}",
        lambda: service.run_one(prompt_id, image_id),
        image_id=image_id
    )


@router.post("/images/{image_id}/run")
async def run_pending(image_id: str):
    """Run every prompt of one image that has no result yet"""
    _require(image_id=image_id)
    service = get_analysis_service()
    return _event_response(
        f"analysis-{image_id}",
        lambda: service.run_pending_for_image(image_id),
        image_id=image_id
    )


@router.post("/run")
async def run_all(body: RunAll):
    """Run pending prompts across images, one image at a time"""
    service = get_analysis_service()
    return _event_response("analysis-all", lambda: service.run_for_all_images(body.image_ids))


@router.post("/images/{image_id}/prompts/{prompt_id}/follow-up")
async def follow_up(image_id: str, prompt_id: str, body: FollowUp):
    """Ask a follow-up question about a Text prompt's answer"""
    _require(image_id=image_id, prompt_id=prompt_id)
    service = get_analysis_service()
    if service.prompt_tree.require(prompt_id).result_type != ResultType.TEXT:
        raise HTTPException(status_code=400, detail="Follow-up questions are only supported for text prompts")
    if not service.results.has_history(image_id, prompt_id):
        raise HTTPException(status_code=400, detail="Run the prompt before asking follow-up questions")
    if not body.question.strip():
        raise HTTPException(status_code=400, detail="Question must not be empty")

    return _event_response(
        f"analysis-{image_id}",
        lambda: service.send_follow_up(prompt_id, image_id, body.question),
        image_id=image_id,
        follow_up_prompt_id=prompt_id
    )
