"""handback: hand blocked kanban tasks back to the coding-agent session that raised them."""

__version__ = "0.1.0"
