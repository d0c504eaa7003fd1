from backend.app.models.node import Node

__all__ = ["Node"]
