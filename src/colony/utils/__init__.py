from .tokens import DefaultTokenCounter, TokenCounter

__all__ = ["DefaultTokenCounter", "TokenCounter"]
