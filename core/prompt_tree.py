"""
Prompt forest: ordered prompts with parent references and a derived children index
"""
import uuid
from dataclasses import replace
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set
from core.models import Prompt, ResultType


class PromptTreeError(ValueError):
    """Raised when an edit would break the forest invariant"""


DEFAULT_PROMPTS = [
    Prompt(id='1', text='Describe this image in detail.', result_type=ResultType.TEXT),
    Prompt(id='yesno-1', text='Does this image contain any animals?', result_type=ResultType.YES_NO),
    Prompt(id='child-1', text='How many animals are in the image?', result_type=ResultType.NUMBER,
           parent_id='yesno-1', condition='yes'),
    Prompt(id='child-2', text='Identify the animals.', result_type=ResultType.BOUNDING_BOX,
           parent_id='yesno-1', condition='yes'),
    Prompt(id='2', text='Rate the aesthetic quality of this image.', result_type=ResultType.SCORE,
           score_range=(0, 10)),
]


def new_prompt_id() -> str:
    return uuid.uuid4().hex


class PromptTree:
    """Ordered prompt forest.

    Prompts are kept in display order in a flat list; ``_by_id`` and
    ``_children`` are rebuilt from that list after every mutation.
    """

    def __init__(self, prompts: Iterable[Prompt] = ()):
        self._prompts: List[Prompt] = []
        self._by_id: Dict[str, Prompt] = {}
        self._children: Dict[str, List[Prompt]] = {}
        self.set_prompts(prompts)

    @classmethod
    def with_defaults(cls) -> 'PromptTree':
        return cls(Prompt.from_dict(p.to_dict()) for p in DEFAULT_PROMPTS)

    def __iter__(self) -> Iterator[Prompt]:
        return iter(list(self._prompts))

    def __len__(self) -> int:
        return len(self._prompts)

    def __contains__(self, prompt_id: str) -> bool:
        return prompt_id in self._by_id

    @property
    def prompts(self) -> List[Prompt]:
        return list(self._prompts)

    def get(self, prompt_id: str) -> Optional[Prompt]:
        return self._by_id.get(prompt_id)

    def require(self, prompt_id: str) -> Prompt:
        if prompt := self._by_id.get(prompt_id):
            return prompt
        raise KeyError(f"Prompt not found: {prompt_id}")

    def children(self, prompt_id: str) -> List[Prompt]:
        return list(self._children.get(prompt_id, []))

    @staticmethod
    def is_top_level(prompt: Prompt) -> bool:
        return prompt.is_top_level

    def top_level(self) -> List[Prompt]:
        return [p for p in self._prompts if p.is_top_level]

    def descendants(self, prompt_id: str) -> Set[str]:
        """Transitive closure of children, as prompt ids"""
        found: Set[str] = set()
        stack = [prompt_id]
        while stack:
            for child in self._children.get(stack.pop(), []):
                if child.id not in found:
                    found.add(child.id)
                    stack.append(child.id)
        return found

    def _subtree(self, prompt_id: str) -> List[Prompt]:
        ids = {prompt_id} | self.descendants(prompt_id)
        return [p for p in self._prompts if p.id in ids]

    # ─── Mutation ────────────────────────────────────────────────────────

    def _reindex(self) -> None:
        self._by_id = {p.id: p for p in self._prompts}
        self._children = {}
        for prompt in self._prompts:
            if prompt.parent_id:
                self._children.setdefault(prompt.parent_id, []).append(prompt)

    def _validate(self, prompts: List[Prompt]) -> None:
        by_id: Dict[str, Prompt] = {}
        for prompt in prompts:
            if prompt.id in by_id:
                raise PromptTreeError(f"Duplicate prompt id: {prompt.id}")
            by_id[prompt.id] = prompt

        for prompt in prompts:
            seen = {prompt.id}
            parent_id = prompt.parent_id
            while parent_id:
                if parent_id not in by_id:
                    raise PromptTreeError(f"Prompt {prompt.id} references missing parent {parent_id}")
                if parent_id in seen:
                    raise PromptTreeError(f"Prompt {prompt.id} is part of a parent cycle")
                seen.add(parent_id)
                parent_id = by_id[parent_id].parent_id

    def set_prompts(self, prompts: Iterable[Prompt]) -> None:
        """Replace the whole prompt set"""
        prompts = list(prompts)
        self._validate(prompts)
        self._prompts = prompts
        self._reindex()

    def add_prompt(
        self,
        parent_id: Optional[str] = None,
        text: str = '',
        result_type: ResultType = ResultType.TEXT,
        **fields: Any
    ) -> Prompt:
        """Append a new prompt, pre-filling the trigger condition for conditional children"""
        prompt = Prompt(id=fields.pop('id', None) or new_prompt_id(), text=text, result_type=result_type, **fields)

        if parent_id:
            parent = self.require(parent_id)
            prompt.parent_id = parent_id
            if parent.result_type == ResultType.YES_NO and prompt.condition is None:
                prompt.condition = 'yes'
            if parent.result_type == ResultType.SCORE and prompt.condition_operator is None:
                low, high = parent.effective_score_range
                prompt.condition_operator = 'above'
                prompt.condition_value = (low + high) / 2

        self.set_prompts(self._prompts + [prompt])
        return prompt

    def update_prompt(self, prompt_id: str, **changes: Any) -> Prompt:
        """Apply a partial update; ``None`` clears an optional field"""
        current = self.require(prompt_id)
        unknown = set(changes) - set(Prompt.__dataclass_fields__)
        if unknown:
            raise PromptTreeError(f"Unknown prompt fields: {sorted(unknown)}")
        if changes.get('id', prompt_id) != prompt_id:
            raise PromptTreeError("Prompt id cannot be changed")

        updated = replace(current, **changes)
        self.set_prompts([updated if p.id == prompt_id else p for p in self._prompts])
        return updated

    def delete_prompt(self, prompt_id: str) -> List[str]:
        """Delete a prompt and all its descendants

        Returns:
            Ids of every deleted prompt
        """
        self.require(prompt_id)
        doomed = {prompt_id} | self.descendants(prompt_id)
        self.set_prompts(p for p in self._prompts if p.id not in doomed)
        return [prompt_id] + sorted(doomed - {prompt_id})

    def move_prompt(self, dragged_id: str, target_id: str) -> bool:
        """Move a top-level prompt with its subtree to just before another top-level prompt"""
        dragged = self.get(dragged_id)
        target = self.get(target_id)
        if not dragged or not target or not dragged.is_top_level or not target.is_top_level:
            return False
        if dragged_id == target_id:
            return False

        group = self._subtree(dragged_id)
        group_ids = {p.id for p in group}
        remaining = [p for p in self._prompts if p.id not in group_ids]
        index = next(i for i, p in enumerate(remaining) if p.id == target_id)
        self.set_prompts(remaining[:index] + group + remaining[index:])
        return True

    # ─── Prompt-set files ────────────────────────────────────────────────

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self._prompts]

    @classmethod
    def from_dicts(cls, items: Any) -> 'PromptTree':
        if not isinstance(items, list) or not all(
            isinstance(item, dict) and item.get('id') and item.get('text') and item.get('type')
            for item in items
        ):
            raise PromptTreeError("Invalid prompt file format.")
        try:
            return cls(Prompt.from_dict(item) for item in items)
        except (TypeError, ValueError) as e:
            raise PromptTreeError(f"Invalid prompt file format: {e}")
