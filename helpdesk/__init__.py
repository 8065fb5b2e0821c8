"""
Support portal chat engine: retrieval-augmented answers over knowledge-base articles.
"""
__version__ = "0.1.0"
