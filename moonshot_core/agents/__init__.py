"""会话层：截断续写控制与对话门面。"""

from moonshot_core.agents.continuation import ContinuationController
from moonshot_core.agents.session import ChatSession

__all__ = ["ChatSession", "ContinuationController"]
