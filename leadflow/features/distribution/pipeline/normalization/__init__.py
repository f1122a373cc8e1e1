from .identity import normalize

__all__ = ["normalize"]
