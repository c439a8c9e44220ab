import json
import logging
import re
from typing import List, Optional, Sequence

from google import genai
from google.genai import types
from pydantic import BaseModel, Field

import config
from models import FixedSchedule, TimeBlock
from optimizer import arrangement_order
from schedule_fixer import has_time_conflict

logger = logging.getLogger(__name__)

_CLOSER = {"{": "}", "[": "]"}
_DANGLING_KEY = re.compile(r'([{,])\s*"[^"]*"\s*:?$')   # key with no value


# ── Internal LLM output schema (what the LLM actually generates) ─────

class _OptimizerOutput(BaseModel):
    """Schema the LLM must return; ids are mapped back onto the candidates we sent."""
    selected_ids: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


def _repair_truncated_json(raw: str) -> str:
    """
    Best-effort repair for JSON that was cut off mid-stream by a token limit.
    Strategy:
      1. Close a string left open at the cut.
      2. Drop a dangling object key or trailing separator.
      3. Close every open array and object in LIFO order.
    """
    text = raw.strip()

    closers = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _CLOSER:
            closers.append(_CLOSER[ch])
        elif closers and ch == closers[-1]:
            closers.pop()

    if in_string:
        if escaped:
            text = text[:-1]
        text += '"'
    text = text.rstrip(", \n\r\t")
    if closers and closers[-1] == "}":
        text = _DANGLING_KEY.sub(r"\1", text)
    return text.rstrip(",: \n\r\t") + "".join(reversed(closers))


def _block_payload(block: TimeBlock) -> dict:
    return {
        "id": block.id,
        "title": block.title,
        "instructor": block.secondary_tag,
        "days": [d.name.title() for d in block.days],
        "date": block.specific_date.isoformat() if block.specific_date else None,
        "start": block.start_time,
        "end": block.end_time,
    }


class LLMOptimizer:
    """Gemini-backed arrangement of the non-fixed candidates around the fixed set."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = config.GEMINI_MODEL,
        client=None,
    ):
        self.client = client or genai.Client(api_key=api_key)
        self.model = model

    async def optimize(
        self,
        candidates: Sequence[TimeBlock],
        fixed: Sequence[FixedSchedule],
    ) -> List[TimeBlock]:
        system_prompt = """You arrange a weekly class timetable around blocks the user has fixed.
Rules:
- Fixed blocks are immovable. Never select a candidate that overlaps a fixed block on a shared day.
- Selected candidates must not overlap each other on a shared day.
- Prefer keeping as many distinct classes as possible; among equal options keep earlier ones.
- You may only select ids from the candidate list. Do not invent blocks.

Output ONLY valid JSON matching the _OptimizerOutput schema."""

        user_prompt = f"""
## Fixed blocks
{json.dumps([_block_payload(f) for f in fixed], indent=2, ensure_ascii=False)}

## Candidates
{json.dumps([_block_payload(c) for c in candidates], indent=2, ensure_ascii=False)}

Select the candidate ids for the new arrangement now."""

        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=user_prompt,
            config=types.GenerateContentConfig(
                system_instruction=system_prompt,
                response_mime_type="application/json",
                response_schema=_OptimizerOutput,
                temperature=0.2,
            ),
        )
        output = self._parse(response)
        for note in output.notes:
            logger.debug("optimizer note: %s", note)

        by_id = {c.id: c for c in candidates}
        unknown = [i for i in output.selected_ids if i not in by_id]
        if unknown:
            logger.warning("optimizer returned %d unknown candidate id(s); ignoring them", len(unknown))

        # ── Post-process: fixed blocks always win (pure logic) ──
        selected: List[TimeBlock] = []
        seen = set()
        for candidate_id in output.selected_ids:
            candidate = by_id.get(candidate_id)
            if candidate is None or candidate_id in seen:
                continue
            seen.add(candidate_id)
            if any(has_time_conflict(f, candidate) for f in fixed):
                logger.warning("optimizer selected %r despite a fixed-block clash; dropping it", candidate.title)
                continue
            selected.append(candidate)
        return sorted(selected, key=arrangement_order)

    @staticmethod
    def _parse(response) -> _OptimizerOutput:
        # ── 1. Best case: SDK already parsed into Pydantic ────────────
        if isinstance(response.parsed, _OptimizerOutput):
            return response.parsed
        if isinstance(response.parsed, dict):
            return _OptimizerOutput.model_validate(response.parsed)

        raw_text = response.text or ""
        if not raw_text:
            finish_reason = response.candidates[0].finish_reason if response.candidates else "no candidates"
            raise ValueError(f"optimizer LLM returned an empty response. Finish reason: {finish_reason}")

        # ── 2. Parse as-is, then after repairing a truncated tail ─────
        try:
            return _OptimizerOutput.model_validate_json(raw_text)
        except ValueError:
            logger.warning("optimizer response was not valid JSON; attempting repair")
        try:
            return _OptimizerOutput.model_validate_json(_repair_truncated_json(raw_text))
        except ValueError as err:
            raise ValueError(
                f"optimizer LLM response could not be parsed even after repair: {err}\n"
                f"Raw text (first 500 chars): {raw_text[:500]}"
            ) from err
