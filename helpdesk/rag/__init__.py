"""
RAG (Retrieval-Augmented Generation) module for answering support questions.
"""
from .orchestrator import ChatOrchestrator, ChatState

__all__ = ['ChatOrchestrator', 'ChatState']
