"""Provider orchestration for content generation: routing, cascading execution, cost tracking and JSON repair."""

__version__ = "0.1.0"
