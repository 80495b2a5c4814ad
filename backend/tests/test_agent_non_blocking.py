import asyncio
import time

import pytest

from agents.studio import Agent, AgentRole


class SlowLLM:
    def chat(self, messages, **kwargs):
        time.sleep(0.2)
        return "ok"


@pytest.mark.asyncio
async def test_agent_think_does_not_block_event_loop():
    agent = Agent(
        role=AgentRole.WRITER,
        name="writer",
        description="",
        system_prompt="system",
        llm_client=SlowLLM(),
    )

    start = time.perf_counter()
    think_task = asyncio.create_task(agent.think({"task": "write_scene"}))
    await asyncio.sleep(0.05)
    elapsed = time.perf_counter() - start
    # If think() blocks event loop, this sleep would not wake up until ~0.2s.
    assert elapsed < 0.15
    assert await think_task == "ok"


@pytest.mark.asyncio
async def test_parallel_agents_overlap():
    agents = [
        Agent(role=AgentRole.CRITIC, name=f"critic-{i}", description="", system_prompt="system", llm_client=SlowLLM())
        for i in range(3)
    ]

    start = time.perf_counter()
    results = await asyncio.gather(*(agent.think({"task": "review_chapter"}) for agent in agents))
    elapsed = time.perf_counter() - start

    assert results == ["ok", "ok", "ok"]
    assert elapsed < 0.5
