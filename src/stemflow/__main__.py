from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Optional

from stemflow.config import YamlConfigLoader
from stemflow.config.interfaces import ConfigLoader
from stemflow.config.models import AppConfig, ConfigLoadRequest
from stemflow.core.models import NODE_ACTIONS, NODE_TYPES, GhostProposal, GraphEdge, GraphNode, Position
from stemflow.generation.actions import NodeActionRunner
from stemflow.generation.orchestrator import GenerationOrchestrator
from stemflow.graph.store import JsonFileGraphStore
from stemflow.llm.errors import StemflowError
from stemflow.llm.settings import SettingsCredentialStore
from stemflow.llm.transport import ProviderClient
from stemflow.logging import init_logging
from stemflow.search.exa import ExaSearchClient
from stemflow.staging.machine import GhostStagingMachine

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stemflow", description="Research graph assistant")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    parser.add_argument(
        "--graph",
        default=None,
        help="Path to the graph JSON file (default: app.graph_path from config)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Command: add-node
    add_parser = subparsers.add_parser("add-node", help="Add a node to the graph")
    add_parser.add_argument("--type", choices=NODE_TYPES, default="OBSERVATION")
    add_parser.add_argument("--text", required=True)
    add_parser.add_argument("--parent", default=None, help="Connect the new node below this node id")
    add_parser.add_argument("--grade", type=float, default=None)
    add_parser.add_argument("--x", type=float, default=0)
    add_parser.add_argument("--y", type=float, default=0)

    # Command: list
    subparsers.add_parser("list", help="Print nodes, edges and staged ghosts")

    # Command: propose
    propose_parser = subparsers.add_parser("propose", help="Plan next-step ghosts below a node")
    propose_parser.add_argument("node_id")

    # Command: accept / retry
    accept_parser = subparsers.add_parser("accept", help="Generate and promote a ghost")
    accept_parser.add_argument("ghost_id")
    retry_parser = subparsers.add_parser("retry", help="Retry a ghost in error state")
    retry_parser.add_argument("ghost_id")

    # Command: dismiss
    dismiss_parser = subparsers.add_parser("dismiss", help="Remove staged ghosts")
    dismiss_parser.add_argument("ghost_id", nargs="?", default=None)
    dismiss_parser.add_argument("--all", action="store_true", help="Dismiss every staged ghost")

    # Command: expand
    expand_parser = subparsers.add_parser(
        "expand",
        help="Plan and generate every direction below a node without staging",
    )
    expand_parser.add_argument("node_id")

    # Command: action
    action_parser = subparsers.add_parser("action", help="Run a free-text AI action on a node")
    action_parser.add_argument("node_id")
    action_parser.add_argument("action", choices=NODE_ACTIONS)
    action_parser.add_argument("--context", default=None, help="Extra context appended to the prompt")
    action_parser.add_argument(
        "--no-create", action="store_true", help="Print the result without adding a node to the graph"
    )

    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _ghost_summary(ghost: GhostProposal) -> dict:
    summary = {
        "id": ghost.id,
        "parent_id": ghost.parent_id,
        "status": ghost.status,
        "type": ghost.suggested_type,
        "title": ghost.planner_direction.summary_title,
        "search_query": ghost.planner_direction.search_query,
    }
    if ghost.error:
        summary["error"] = {"message": ghost.error.message, "code": ghost.error.code}
    return summary


def _node_summary(node: GraphNode) -> dict:
    return {
        "id": node.id,
        "type": node.type,
        "title": node.summary_title,
        "grade": node.grade,
        "text": node.text,
        "citations": [{"index": c.index, "title": c.title, "url": c.url} for c in node.citations],
    }


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader: ConfigLoader = YamlConfigLoader()
    return await loader.load(ConfigLoadRequest(yaml_path=args.config))


def _build_machine(config: AppConfig, store: JsonFileGraphStore) -> GhostStagingMachine:
    orchestrator = GenerationOrchestrator(
        client=ProviderClient(timeout_seconds=config.ai.timeout_seconds),
        search=ExaSearchClient(config.search),
        credentials=SettingsCredentialStore(config.ai),
        store=store,
        settings=config.generation,
        global_goal=config.app.global_goal,
        stream=config.ai.stream,
        max_output_tokens=config.ai.max_output_tokens,
    )
    return GhostStagingMachine(orchestrator=orchestrator, store=store)


def _build_action_runner(config: AppConfig, store: JsonFileGraphStore) -> NodeActionRunner:
    return NodeActionRunner(
        client=ProviderClient(timeout_seconds=config.ai.timeout_seconds),
        credentials=SettingsCredentialStore(config.ai),
        store=store,
        settings=config.generation,
        global_goal=config.app.global_goal,
        stream=config.ai.stream,
        max_output_tokens=config.ai.max_output_tokens,
    )


def _add_node(args: argparse.Namespace, store: JsonFileGraphStore) -> None:
    if args.parent is not None and store.get_node(args.parent) is None:
        raise StemflowError(f"Node not found: {args.parent}")
    node = GraphNode(
        id=f"node-{uuid.uuid4().hex[:12]}",
        type=args.type,
        text=args.text,
        position=Position(x=args.x, y=args.y),
        grade=args.grade,
    )
    store.add_node(node)
    if args.parent is not None:
        store.add_edge(GraphEdge(id=f"edge-{args.parent}-{node.id}", source=args.parent, target=node.id))
    _print_json(_node_summary(node))


def _list_graph(store: JsonFileGraphStore) -> None:
    state = store.snapshot()
    _print_json(
        {
            "nodes": [_node_summary(node) for node in state.nodes],
            "edges": [{"source": edge.source, "target": edge.target} for edge in state.edges],
            "ghosts": [_ghost_summary(ghost) for ghost in state.ghosts],
        }
    )


async def _run_command(args: argparse.Namespace) -> int:
    config = await _load_config(args)
    init_logging(config.logging)

    store = JsonFileGraphStore(Path(args.graph or config.app.graph_path))
    machine = _build_machine(config, store)
    logger.info("Running command. command=%s", args.command)

    if args.command == "add-node":
        _add_node(args, store)
    elif args.command == "list":
        _list_graph(store)
    elif args.command == "propose":
        proposals = await machine.propose(args.node_id)
        _print_json([_ghost_summary(ghost) for ghost in proposals])
    elif args.command in ("accept", "retry"):
        action = machine.accept if args.command == "accept" else machine.retry
        node: Optional[GraphNode] = await action(args.ghost_id)
        if node is not None:
            _print_json(_node_summary(node))
            return 0
        ghost = store.get_ghost(args.ghost_id)
        if ghost is not None:
            _print_json(_ghost_summary(ghost))
        return 1
    elif args.command == "dismiss":
        if args.all:
            _print_json({"dismissed": machine.dismiss_all()})
        elif args.ghost_id:
            _print_json({"dismissed": int(machine.dismiss(args.ghost_id))})
        else:
            raise StemflowError("dismiss needs a ghost id or --all")
    elif args.command == "expand":
        steps = await machine.orchestrator.generate_next_steps(args.node_id)
        _print_json(
            [
                {
                    "type": step.type,
                    "title": step.summary_title,
                    "text": step.text,
                    "citations": [{"index": c.index, "title": c.title, "url": c.url} for c in step.citations],
                }
                for step in steps
            ]
        )
    elif args.command == "action":
        runner = _build_action_runner(config, store)
        result = await runner.execute_action(
            args.node_id, args.action, context=args.context, create_node=not args.no_create
        )
        if result is None:
            return 1
        _print_json(
            {
                "action": result.action,
                "text": result.text,
                "node": _node_summary(result.node) if result.node is not None else None,
            }
        )
    return 0


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        exit_code = asyncio.run(_run_command(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        exit_code = 130
    except StemflowError as exc:
        logger.error("Command failed. command=%s error=%s", args.command, exc)
        exit_code = 1
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
