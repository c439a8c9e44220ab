import asyncio
import json
from types import SimpleNamespace

import pytest

from llm_engine import LLMOptimizer, _OptimizerOutput, _repair_truncated_json
from models import BlockCategory, TimeBlock
from schedule_fixer import make_fixed
from time_model import Weekday


class FakeModels:
    def __init__(self, response):
        self.response = response
        self.requests = []

    async def generate_content(self, model, contents, config):
        self.requests.append({"model": model, "contents": contents, "config": config})
        return self.response


def fake_client(parsed=None, text=None):
    response = SimpleNamespace(parsed=parsed, text=text, candidates=[])
    models = FakeModels(response)
    return SimpleNamespace(aio=SimpleNamespace(models=models)), models


@pytest.fixture
def blocks():
    mon = [Weekday.MONDAY]
    return {
        "math": TimeBlock(id="math", title="Math", category=BlockCategory.CLASS, start_time="18:00", end_time="19:00", days=mon),
        "piano": TimeBlock(id="piano", title="Piano", category=BlockCategory.CLASS, start_time="18:00", end_time="19:00", days=mon),
        "english": TimeBlock(id="english", title="English", category=BlockCategory.CLASS, start_time="16:00", end_time="17:00", days=mon),
    }


def test_selected_ids_are_mapped_back_to_candidates(blocks):
    client, models = fake_client(parsed=_OptimizerOutput(selected_ids=["english", "ghost"], notes=["ok"]))
    optimizer = LLMOptimizer(client=client, model="gemini-test")

    fixed = [make_fixed(blocks["math"])]
    arranged = asyncio.run(optimizer.optimize([blocks["piano"], blocks["english"]], fixed))

    assert arranged == [blocks["english"]]
    request = models.requests[0]
    assert request["model"] == "gemini-test"
    assert '"Math"' in request["contents"] and '"English"' in request["contents"]
    assert request["config"].response_schema is _OptimizerOutput


def test_selection_clashing_with_fixed_block_is_dropped(blocks):
    client, _ = fake_client(parsed=_OptimizerOutput(selected_ids=["piano", "english"]))
    fixed = [make_fixed(blocks["math"])]

    arranged = asyncio.run(LLMOptimizer(client=client).optimize([blocks["piano"], blocks["english"]], fixed))
    assert [b.id for b in arranged] == ["english"]


def test_text_response_is_parsed_when_sdk_did_not(blocks):
    client, _ = fake_client(text=json.dumps({"selected_ids": ["english", "piano"], "notes": []}))
    arranged = asyncio.run(LLMOptimizer(client=client).optimize(list(blocks.values()), []))
    assert [b.id for b in arranged] == ["english", "piano"]


def test_truncated_text_response_is_repaired(blocks):
    client, _ = fake_client(text='{"selected_ids": ["english", "pia')
    arranged = asyncio.run(LLMOptimizer(client=client).optimize(list(blocks.values()), []))
    assert [b.id for b in arranged] == ["english"]


def test_empty_response_raises(blocks):
    client, _ = fake_client(text="")
    with pytest.raises(ValueError):
        asyncio.run(LLMOptimizer(client=client).optimize(list(blocks.values()), []))


@pytest.mark.parametrize("raw", [
    '{"selected_ids": ["a", "b"',
    '{"selected_ids": ["a"], "notes": ["cut mid',
    '{"selected_ids": ["a"], "notes":',
    '{"selected_ids": ["a"], "no',
    '{"selected_ids": ["a"], "notes": ["cut at an escape \\',
])
def test_repair_produces_valid_json(raw):
    repaired = json.loads(_repair_truncated_json(raw))
    assert repaired["selected_ids"][0] == "a"
