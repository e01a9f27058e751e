import asyncio
import json
import unittest
from typing import AsyncIterator, List, Optional, Sequence

from stemflow.core.models import (
    GraphNode,
    Position,
    RequestOptions,
    Response,
    SearchResponse,
    SearchResult,
    StreamChunk,
)
from stemflow.generation.config import GenerationSettings
from stemflow.generation.orchestrator import GenerationOrchestrator
from stemflow.graph.store import InMemoryGraphStore
from stemflow.llm.errors import (
    MISSING_KEY_MESSAGE,
    TRUNCATED_MESSAGE,
    ConfigurationError,
    MalformedOutputError,
    NetworkError,
    UpstreamError,
)
from stemflow.llm.settings import ApiCredentials
from stemflow.staging.machine import GhostStagingMachine

SOURCES = (
    SearchResult(title="Soil microbes", url="https://example.com/a", text="Microbes help roots."),
    SearchResult(title="Drought wheat", url="https://example.com/b", text="Wheat under drought."),
)

STEP_JSON = json.dumps(
    [
        {
            "type": "MECHANISM",
            "summary_title": "Root signalling",
            "text_content": "Roots signal stress [[exa:2]].",
            "exa_citations": ["exa:2"],
        }
    ]
)


def _planner_json(count: int) -> str:
    return json.dumps(
        [{"summary_title": f"Direction {i}", "search_query": f"query {i}"} for i in range(count)]
    )


class ScriptedModelClient:
    """Plays back scripted outcomes; planner and generation calls are told apart by the system prompt."""

    def __init__(self, *, planner: Sequence[object] = (), generation: Sequence[object] = ()) -> None:
        self.planner_script: List[object] = list(planner)
        self.generation_script: List[object] = list(generation)
        self.planner_calls = 0
        self.generation_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.last_options: Optional[RequestOptions] = None

    async def complete(self, options: RequestOptions, credentials: ApiCredentials) -> Response:
        self.last_options = options
        if "planner" in options.messages[0].content:
            self.planner_calls += 1
            outcome = self.planner_script.pop(0)
        else:
            self.generation_calls += 1
            if self.gate is not None:
                await self.gate.wait()
            outcome = self.generation_script.pop(0) if self.generation_script else STEP_JSON
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, Response):
            return outcome
        return Response(text=outcome, finish_reason="stop", model=options.model)

    async def stream(self, options: RequestOptions, credentials: ApiCredentials) -> AsyncIterator[StreamChunk]:
        response = await self.complete(options, credentials)
        half = len(response.text) // 2
        yield StreamChunk(text=response.text[:half], done=False)
        yield StreamChunk(text=response.text[half:], done=False)
        yield StreamChunk(text="", done=True)


class FakeSearch:
    def __init__(self, response: Optional[SearchResponse] = None) -> None:
        self.response = response or SearchResponse(results=SOURCES)
        self.queries: List[str] = []

    async def search(self, query: str, *, num_results: Optional[int] = None) -> SearchResponse:
        self.queries.append(query)
        return self.response


class FakeCredentials:
    def __init__(self, key: str = "sk-test") -> None:
        self.key = key

    def load_api_keys(self) -> ApiCredentials:
        if not self.key:
            return ApiCredentials(provider=None, key="")
        return ApiCredentials(provider="openai", key=self.key, model="gpt-4o")


def _build(
    client: ScriptedModelClient,
    *,
    search: Optional[FakeSearch] = None,
    key: str = "sk-test",
    stream: bool = False,
    settings: Optional[GenerationSettings] = None,
):
    store = InMemoryGraphStore()
    store.add_node(GraphNode(id="root", type="OBSERVATION", text="Wheat wilts early", position=Position(x=100, y=50)))
    orchestrator = GenerationOrchestrator(
        client=client,
        search=search or FakeSearch(),
        credentials=FakeCredentials(key),
        store=store,
        settings=settings or GenerationSettings(),
        global_goal="Drought-tolerant wheat",
        stream=stream,
        max_output_tokens=512,
    )
    return store, orchestrator, GhostStagingMachine(orchestrator=orchestrator, store=store)


async def _settle(predicate, *, rounds: int = 100) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class GenerateTests(unittest.IsolatedAsyncioTestCase):
    async def test_three_directions_become_proposals_without_body(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        search = FakeSearch()
        _, orchestrator, _ = _build(client, search=search)

        plan = await orchestrator.generate("root")

        self.assertEqual(len(plan.proposals), 3)
        for index, ghost in enumerate(plan.proposals):
            self.assertEqual(ghost.status, "proposed")
            self.assertEqual(ghost.suggested_type, "MECHANISM")
            self.assertEqual(ghost.parent_id, "root")
            self.assertIsNone(ghost.text)
            self.assertEqual(ghost.position, Position(x=100 + index * 220, y=300))
            self.assertEqual(ghost.planner_direction.search_query, f"query {index}")
        self.assertEqual(client.generation_calls, 0)
        self.assertEqual(search.queries, [])

    async def test_system_prompt_carries_global_goal(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        _, orchestrator, _ = _build(client)
        await orchestrator.generate("root")
        self.assertIn("Drought-tolerant wheat", client.last_options.messages[0].content)
        self.assertEqual(client.last_options.max_tokens, 512)

    async def test_too_few_directions_rejects(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(1)])
        store, _, machine = _build(client)

        with self.assertRaises(MalformedOutputError) as ctx:
            await machine.propose("root")
        self.assertEqual(str(ctx.exception), "AI returned fewer than 3 planned directions")
        self.assertEqual(store.snapshot().ghosts, ())

    async def test_transient_planner_failures_are_retried(self) -> None:
        client = ScriptedModelClient(
            planner=[UpstreamError("Bad gateway", status=502), NetworkError("Network error"), _planner_json(3)]
        )
        _, orchestrator, _ = _build(client)

        plan = await orchestrator.generate("root")
        self.assertEqual(len(plan.proposals), 3)
        self.assertEqual(client.planner_calls, 3)

    async def test_persistent_planner_failure_rejects_after_three_attempts(self) -> None:
        client = ScriptedModelClient(planner=[UpstreamError("Service unavailable", status=503)] * 3)
        store, _, machine = _build(client)

        with self.assertRaises(UpstreamError) as ctx:
            await machine.propose("root")
        self.assertEqual(str(ctx.exception), "Service unavailable")
        self.assertEqual(client.planner_calls, 3)
        self.assertEqual(store.snapshot().ghosts, ())

    async def test_malformed_planner_output_is_not_retried(self) -> None:
        client = ScriptedModelClient(planner=["I cannot help with that.", _planner_json(3)])
        _, orchestrator, _ = _build(client)
        with self.assertRaises(MalformedOutputError):
            await orchestrator.generate("root")
        self.assertEqual(client.planner_calls, 1)

    async def test_missing_key_fails_before_any_call(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        _, orchestrator, _ = _build(client, key="")
        with self.assertRaises(ConfigurationError) as ctx:
            await orchestrator.generate("root")
        self.assertEqual(str(ctx.exception), MISSING_KEY_MESSAGE)
        self.assertEqual(client.planner_calls, 0)

    async def test_unknown_source_node(self) -> None:
        _, orchestrator, _ = _build(ScriptedModelClient())
        with self.assertRaises(ConfigurationError):
            await orchestrator.generate("missing")

    async def test_truncated_planner_output(self) -> None:
        client = ScriptedModelClient(planner=[Response(text="[{", finish_reason="length", model="gpt-4o")])
        _, orchestrator, _ = _build(client)
        with self.assertRaises(MalformedOutputError) as ctx:
            await orchestrator.generate("root")
        self.assertEqual(str(ctx.exception), TRUNCATED_MESSAGE)

    async def test_streaming_mode_collects_text(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(4)])
        _, orchestrator, _ = _build(client, stream=True)
        plan = await orchestrator.generate("root")
        self.assertEqual(len(plan.proposals), 4)


class GenerateNextStepsTests(unittest.IsolatedAsyncioTestCase):
    async def test_every_direction_is_grounded_and_generated(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        search = FakeSearch()
        _, orchestrator, _ = _build(client, search=search)

        steps = await orchestrator.generate_next_steps("root")

        self.assertEqual(len(steps), 3)
        self.assertEqual(sorted(search.queries), ["query 0", "query 1", "query 2"])
        self.assertEqual(client.generation_calls, 3)
        step = steps[0]
        self.assertEqual(step.type, "MECHANISM")
        self.assertEqual(step.text, "Roots signal stress [1].")
        self.assertEqual(step.citations[0].url, "https://example.com/b")

    async def test_search_failure_degrades_to_uncited_generation(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        search = FakeSearch(SearchResponse(error="Exa search failed with status 500", status=500))
        _, orchestrator, _ = _build(client, search=search)

        steps = await orchestrator.generate_next_steps("root")
        self.assertEqual([len(step.citations) for step in steps], [0, 0, 0])
        self.assertEqual(steps[0].text, "Roots signal stress .")

    async def test_one_failed_direction_fails_the_batch(self) -> None:
        client = ScriptedModelClient(
            planner=[_planner_json(3)],
            generation=[STEP_JSON, "garbage", STEP_JSON],
        )
        _, orchestrator, _ = _build(client)
        with self.assertRaises(MalformedOutputError):
            await orchestrator.generate_next_steps("root")


class GhostStagingTests(unittest.IsolatedAsyncioTestCase):
    async def test_rate_limited_accept_marks_only_that_ghost(self) -> None:
        client = ScriptedModelClient(
            planner=[_planner_json(3)],
            generation=[UpstreamError("Rate limit reached", status=429, provider="openai")] * 3,
        )
        store, _, machine = _build(client)
        ghosts = await machine.propose("root")

        node = await machine.accept(ghosts[0].id)

        self.assertIsNone(node)
        state = {ghost.id: ghost for ghost in store.snapshot().ghosts}
        failed = state[ghosts[0].id]
        self.assertEqual(failed.status, "error")
        self.assertTrue(failed.error.retryable)
        self.assertEqual(failed.error.code, "rate_limit")
        self.assertEqual(failed.error.provider, "openai")
        self.assertEqual([state[g.id].status for g in ghosts[1:]], ["proposed", "proposed"])
        self.assertEqual(client.generation_calls, 3)

    async def test_accept_promotes_only_that_ghost(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        store, _, machine = _build(client)
        ghosts = await machine.propose("root")

        node = await machine.accept(ghosts[1].id)

        state = store.snapshot()
        self.assertIsNotNone(node)
        self.assertEqual(node.type, "MECHANISM")
        self.assertEqual(node.source_ghost_id, ghosts[1].id)
        self.assertEqual(node.position, ghosts[1].position)
        self.assertEqual(node.summary_title, "Root signalling")
        self.assertEqual([g.id for g in state.ghosts], [ghosts[0].id, ghosts[2].id])
        self.assertTrue(all(g.status == "proposed" for g in state.ghosts))
        self.assertEqual([(e.source, e.target) for e in state.edges], [("root", node.id)])

    async def test_second_accept_while_pending_is_ignored(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        client.gate = asyncio.Event()
        store, _, machine = _build(client)
        ghosts = await machine.propose("root")

        first = asyncio.ensure_future(machine.accept(ghosts[0].id))
        await _settle(lambda: client.generation_calls == 1)
        self.assertEqual(store.get_ghost(ghosts[0].id).status, "pending")
        self.assertIsNone(await machine.accept(ghosts[0].id))

        client.gate.set()
        node = await first
        self.assertIsNotNone(node)
        self.assertEqual(client.generation_calls, 1)
        self.assertEqual(len(store.snapshot().nodes), 2)

    async def test_dismiss_while_pending_discards_result(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        client.gate = asyncio.Event()
        store, _, machine = _build(client)
        ghosts = await machine.propose("root")

        pending = asyncio.ensure_future(machine.accept(ghosts[0].id))
        await _settle(lambda: client.generation_calls == 1)
        self.assertTrue(machine.dismiss(ghosts[0].id))

        client.gate.set()
        self.assertIsNone(await pending)
        state = store.snapshot()
        self.assertEqual([n.id for n in state.nodes], ["root"])
        self.assertEqual(len(state.ghosts), 2)

    async def test_dismiss_before_generation_starts_skips_all_work(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        search = FakeSearch()
        store, orchestrator, machine = _build(client, search=search)
        ghosts = await machine.propose("root")
        reloaded = GhostStagingMachine(orchestrator=orchestrator, store=store)

        pending = asyncio.ensure_future(reloaded.accept(ghosts[0].id))
        await asyncio.sleep(0)
        self.assertTrue(reloaded.dismiss(ghosts[0].id))

        self.assertIsNone(await pending)
        self.assertEqual(client.generation_calls, 0)
        self.assertEqual(search.queries, [])
        self.assertNotIn(ghosts[0].id, reloaded._contexts)
        self.assertFalse(reloaded.is_pending(ghosts[0].id))
        self.assertEqual(len(store.snapshot().nodes), 1)

    async def test_cancel_returns_ghost_to_proposed(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        client.gate = asyncio.Event()
        store, _, machine = _build(client)
        ghosts = await machine.propose("root")

        pending = asyncio.ensure_future(machine.accept(ghosts[0].id))
        await _settle(lambda: client.generation_calls == 1)
        self.assertTrue(machine.cancel(ghosts[0].id))

        self.assertIsNone(await pending)
        self.assertEqual(store.get_ghost(ghosts[0].id).status, "proposed")
        self.assertFalse(machine.is_pending(ghosts[0].id))
        self.assertEqual(len(store.snapshot().nodes), 1)

    async def test_retry_after_error(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)], generation=["not json"])
        store, _, machine = _build(client)
        ghosts = await machine.propose("root")

        self.assertIsNone(await machine.accept(ghosts[0].id))
        errored = store.get_ghost(ghosts[0].id)
        self.assertEqual(errored.status, "error")
        self.assertEqual(errored.error.code, "parse")

        node = await machine.retry(ghosts[0].id)
        self.assertIsNotNone(node)
        self.assertIsNone(store.get_ghost(ghosts[0].id))

    async def test_retry_ignores_ghost_not_in_error(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        _, _, machine = _build(client)
        ghosts = await machine.propose("root")
        self.assertIsNone(await machine.retry(ghosts[0].id))
        self.assertEqual(client.generation_calls, 0)

    async def test_restaging_discards_in_flight_generation(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3), _planner_json(3)])
        client.gate = asyncio.Event()
        store, _, machine = _build(client)
        first_batch = await machine.propose("root")

        pending = asyncio.ensure_future(machine.accept(first_batch[0].id))
        await _settle(lambda: client.generation_calls == 1)
        second_batch = await machine.propose("root")

        self.assertIsNone(await pending)
        self.assertEqual([g.id for g in store.snapshot().ghosts], [g.id for g in second_batch])
        self.assertEqual(len(store.snapshot().nodes), 1)

    async def test_accept_after_reload_recomputes_context(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        store, orchestrator, machine = _build(client)
        ghosts = await machine.propose("root")

        fresh = GhostStagingMachine(orchestrator=orchestrator, store=store)
        node = await fresh.accept(ghosts[2].id)
        self.assertIsNotNone(node)

    async def test_dismiss_all(self) -> None:
        client = ScriptedModelClient(planner=[_planner_json(3)])
        store, _, machine = _build(client)
        await machine.propose("root")
        self.assertEqual(machine.dismiss_all(), 3)
        self.assertEqual(store.snapshot().ghosts, ())

    async def test_accept_unknown_ghost_is_noop(self) -> None:
        _, _, machine = _build(ScriptedModelClient())
        self.assertIsNone(await machine.accept("ghost-missing"))


if __name__ == "__main__":
    unittest.main()
