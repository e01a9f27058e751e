from stemflow.graph.store import GraphState, GraphStore, InMemoryGraphStore, JsonFileGraphStore

__all__ = ["GraphState", "GraphStore", "InMemoryGraphStore", "JsonFileGraphStore"]
