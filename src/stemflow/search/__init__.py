from stemflow.search.exa import ExaSearchClient, SearchClient, SearchSettings

__all__ = ["ExaSearchClient", "SearchClient", "SearchSettings"]
