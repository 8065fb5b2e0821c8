"""
Retrieval module: article index and query-time retriever.
"""

# allows users to do: from helpdesk.retrieval import ArticleIndex, Retriever
from .article_index import ArticleIndex, SearchFilter, ReindexReport
from .retriever import Retriever

__all__ = ['ArticleIndex', 'SearchFilter', 'ReindexReport', 'Retriever']
