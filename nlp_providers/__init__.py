"""
Concrete NLP backends

Modules here import their engine at import time; the registry loads them by
class path so a missing engine only disables that backend.
"""
