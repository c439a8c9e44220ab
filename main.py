import logging
from dotenv import load_dotenv
load_dotenv()  # Load .env before config reads the environment

from fastapi import FastAPI, HTTPException
from typing import Any, Dict, List

import config
from day_view import build_range_view
from errors import MalformedRequestError, StaleAggregateError
from models import (
    BlockCategory,
    DayView,
    FixedIntentRequest,
    FixedSchedule,
    ResolveConflictRequest,
    ResolverOutcome,
    ScheduleAggregate,
    SelectOptionRequest,
    ViewRequest,
)
from normalizer import aggregate_from_records, ingest_blocks
from optimizer import build_optimizer
from schedule_fixer import FixedScheduleResolver
from schedule_store import ScheduleStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Timegrid Schedule Engine")

store = ScheduleStore()
optimizer = build_optimizer()


def _candidate_pool(raw_pool: List[Dict[str, Any]]):
    return ingest_blocks(raw_pool, BlockCategory.CLASS)


async def _mutate(user_id: str, operation) -> ResolverOutcome:
    """
    Read-resolve-write under the user's lock. The aggregate is written back
    only when the resolver produced a new one, conditioned on the version read.
    """
    async with store.lock_for(user_id):
        aggregate = store.get_schedule_aggregate(user_id)
        resolver = FixedScheduleResolver(optimizer)
        try:
            outcome: ResolverOutcome = await operation(resolver, aggregate)
        except MalformedRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

        if outcome.success and outcome.aggregate is not None and outcome.aggregate is not aggregate:
            try:
                outcome.aggregate = store.put_schedule_aggregate(
                    user_id, outcome.aggregate, expected_version=aggregate.version
                )
            except StaleAggregateError as exc:
                raise HTTPException(status_code=409, detail=str(exc))

    logger.info("user %s %s -> %s", user_id, outcome.intent.value, outcome.error.value if outcome.error else "ok")
    return outcome


# ── Aggregate storage ────────────────────────────────────────────────

@app.put("/schedule/{user_id}", response_model=ScheduleAggregate)
async def put_schedule(user_id: str, records: Dict[str, Any]):
    """
    Replace the stored aggregate with raw records (camelCase or snake_case
    collections). Malformed blocks are dropped. Pass `version` to make the
    write conditional.
    """
    expected = records.get("version")
    aggregate = aggregate_from_records(user_id, records)
    async with store.lock_for(user_id):
        try:
            return store.put_schedule_aggregate(user_id, aggregate, expected_version=expected)
        except StaleAggregateError as exc:
            raise HTTPException(status_code=409, detail=str(exc))


# ── Display ──────────────────────────────────────────────────────────

@app.post("/schedule/{user_id}/view", response_model=List[DayView])
async def view_schedule(user_id: str, request: ViewRequest):
    """Normalized, merged and laid-out blocks for each day of the requested range."""
    end_date = request.end_date or request.start_date
    if end_date < request.start_date:
        raise HTTPException(status_code=400, detail="end_date is before start_date")
    aggregate = store.get_schedule_aggregate(user_id)
    return build_range_view(request.start_date, end_date, aggregate, request.options)


# ── Fixed schedules ──────────────────────────────────────────────────

@app.post("/schedule/{user_id}/fixed-intent", response_model=ResolverOutcome)
async def fixed_intent(user_id: str, request: FixedIntentRequest):
    """
    Run a parsed pin / modify / remove / list / add_custom intent.

    NOT_FOUND, AMBIGUOUS, CONFLICT and optimizer errors come back as a
    ResolverOutcome with success=false; only malformed requests are HTTP errors.
    """
    pool = _candidate_pool(request.candidate_pool)
    return await _mutate(
        user_id,
        lambda resolver, aggregate: resolver.handle(request.intent, aggregate, pool, request.display_date),
    )


@app.post("/schedule/{user_id}/select-fixed-option", response_model=ResolverOutcome)
async def select_fixed_option(user_id: str, request: SelectOptionRequest):
    """Re-submit an AMBIGUOUS intent with a 1-based option number."""
    pool = _candidate_pool(request.candidate_pool)
    return await _mutate(
        user_id,
        lambda resolver, aggregate: resolver.select_option(
            request.intent, request.option_number, aggregate, pool, request.display_date
        ),
    )


@app.post("/schedule/{user_id}/resolve-fixed-conflict", response_model=ResolverOutcome)
async def resolve_fixed_conflict(user_id: str, request: ResolveConflictRequest):
    """Apply keep_new / keep_existing / keep_both to the pending entry of a CONFLICT outcome."""
    pool = _candidate_pool(request.candidate_pool)
    return await _mutate(
        user_id,
        lambda resolver, aggregate: resolver.resolve_conflict(
            request.pending_fixed, request.policy, aggregate, pool, request.display_date
        ),
    )


@app.get("/schedule/{user_id}/fixed", response_model=List[FixedSchedule])
async def list_fixed(user_id: str):
    return store.get_schedule_aggregate(user_id).fixed_schedules


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8022, reload=True)
