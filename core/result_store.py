"""
Result history store: append-only attempts per (image, prompt) pair
"""
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional
from core.models import AnalysisResult

HistoryListener = Callable[[str, str, List[AnalysisResult]], None]


class ResultHistoryStore:
    """Per (image, prompt) ordered list of AnalysisResult.

    The latest entry is authoritative. Every history change goes through
    ``_commit`` so listeners observe updates in order.
    """

    def __init__(self):
        self._results: Dict[str, Dict[str, List[AnalysisResult]]] = {}
        self._listeners: List[HistoryListener] = []

    # ─── Observation ─────────────────────────────────────────────────────

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, image_id: str, prompt_id: str) -> None:
        history = self.history(image_id, prompt_id)
        for listener in list(self._listeners):
            listener(image_id, prompt_id, history)

    # ─── Reads ───────────────────────────────────────────────────────────

    def history(self, image_id: str, prompt_id: str) -> List[AnalysisResult]:
        return list(self._results.get(image_id, {}).get(prompt_id, []))

    def latest(self, image_id: str, prompt_id: str) -> Optional[AnalysisResult]:
        history = self._results.get(image_id, {}).get(prompt_id)
        return history[-1] if history else None

    def has_history(self, image_id: str, prompt_id: str) -> bool:
        return bool(self._results.get(image_id, {}).get(prompt_id))

    def image_results(self, image_id: str) -> Dict[str, List[AnalysisResult]]:
        return {pid: list(h) for pid, h in self._results.get(image_id, {}).items()}

    def image_ids(self) -> List[str]:
        return list(self._results)

    # ─── Writes ──────────────────────────────────────────────────────────

    def _commit(self, image_id: str, prompt_id: str, entry: AnalysisResult, replace_latest: bool) -> AnalysisResult:
        """Append a new attempt or replace the latest one"""
        history = self._results.setdefault(image_id, {}).setdefault(prompt_id, [])
        if replace_latest and history:
            history[-1] = entry
        else:
            history.append(entry)
        self._notify(image_id, prompt_id)
        return entry

    def append(self, image_id: str, prompt_id: str, entry: AnalysisResult) -> AnalysisResult:
        return self._commit(image_id, prompt_id, entry, replace_latest=False)

    def replace_latest(self, image_id: str, prompt_id: str, entry: AnalysisResult) -> AnalysisResult:
        return self._commit(image_id, prompt_id, entry, replace_latest=True)

    def update_latest(self, image_id: str, prompt_id: str, **changes) -> Optional[AnalysisResult]:
        """Replace the latest entry with a copy carrying the given field changes"""
        if (current := self.latest(image_id, prompt_id)) is None:
            return None
        return self.replace_latest(image_id, prompt_id, replace(current, **changes))

    def discard(self, image_id: str, prompt_id: str, entry: AnalysisResult) -> bool:
        """Remove a specific entry (by identity), used to roll back aborted attempts"""
        history = self._results.get(image_id, {}).get(prompt_id)
        if not history:
            return False
        for index, candidate in enumerate(history):
            if candidate is entry:
                del history[index]
                if not history:
                    del self._results[image_id][prompt_id]
                self._notify(image_id, prompt_id)
                return True
        return False

    def restore(self, image_id: str, prompt_id: str, previous: AnalysisResult, current: AnalysisResult) -> bool:
        """Put ``previous`` back in place of ``current`` if it is still the latest entry"""
        if self.latest(image_id, prompt_id) is not current:
            return False
        self.replace_latest(image_id, prompt_id, previous)
        return True

    def clear(self, image_id: str, prompt_ids: Iterable[str]) -> None:
        """Drop the whole history of the given prompts for one image"""
        image_results = self._results.get(image_id)
        if not image_results:
            return
        for prompt_id in prompt_ids:
            if image_results.pop(prompt_id, None) is not None:
                self._notify(image_id, prompt_id)

    def clear_prompts(self, prompt_ids: Iterable[str]) -> None:
        """Drop the history of the given prompts for every image"""
        prompt_ids = list(prompt_ids)
        for image_id in list(self._results):
            self.clear(image_id, prompt_ids)

    def remove_image(self, image_id: str) -> None:
        self._results.pop(image_id, None)
