"""会话历史。

ConversationHistory 是一次会话中唯一的共享可变状态，只能通过
append/mark/resolve/clear 这几个接口修改。约束：

- 任意时刻最多只有一条 partial=True 的 assistant 消息，且它总是最后一条。
- 存在 partial 消息时不能追加新的 user / assistant 消息，必须先 resolve_partial。
- system 消息只能通过 set_system_message 替换。

对象本身不做线程同步，同一会话上的并发调用需由调用方串行化。
"""

from dataclasses import asdict, replace
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .exceptions import ConversationStateError
from .models import ConversationTurn, Role, ToolCall


DEFAULT_SYSTEM_PROMPT = (
    "You are Kimi, an AI assistant provided by Moonshot AI. You are proficient in "
    "Chinese and English conversations. You provide users with safe, helpful and "
    "accurate answers. You refuse to answer any questions involving terrorism, "
    "racism or explicit violence. Moonshot AI is a proper noun and must not be "
    "translated into other languages."
)


class ConversationHistory:
    def __init__(
        self,
        system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT,
        turns: Optional[Iterable[ConversationTurn]] = None,
    ):
        self._turns: List[ConversationTurn] = []
        if system_prompt:
            self._turns.append(ConversationTurn(role="system", content=system_prompt))
        if turns:
            for turn in turns:
                self._turns.append(replace(turn))
        self._check_partial_invariant()

    # ---- 只读视图 ----

    @property
    def turns(self) -> tuple:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))

    @property
    def partial_turn(self) -> Optional[ConversationTurn]:
        for turn in self._turns:
            if turn.partial:
                return turn
        return None

    @property
    def has_partial(self) -> bool:
        return self.partial_turn is not None

    def last_turn(self, role: Optional[Role] = None) -> Optional[ConversationTurn]:
        """返回最后一条消息；指定 role 时从后往前找该角色的最近一条。"""

        for turn in reversed(self._turns):
            if role is None or turn.role == role:
                return turn
        return None

    def turns_since(self, role: Role) -> List[ConversationTurn]:
        """返回最近一条 role 消息之后的所有消息；没有该角色时返回全部。"""

        for idx in range(len(self._turns) - 1, -1, -1):
            if self._turns[idx].role == role:
                return list(self._turns[idx + 1:])
        return list(self._turns)

    def system_messages(self) -> List[ConversationTurn]:
        return [t for t in self._turns if t.role == "system"]

    def to_messages(self) -> List[Dict[str, Any]]:
        """生成发送给 chat/completions 的 messages 列表。"""

        return [t.to_payload() for t in self._turns]

    # ---- 修改接口 ----

    def append_user(self, content: Any) -> ConversationTurn:
        self._ensure_no_partial("append a user turn")
        turn = ConversationTurn(role="user", content=content)
        self._turns.append(turn)
        return turn

    def append_assistant(
        self,
        content: str,
        tool_calls: Optional[List[ToolCall]] = None,
    ) -> ConversationTurn:
        self._ensure_no_partial("append an assistant turn")
        turn = ConversationTurn(role="assistant", content=content, tool_calls=tool_calls or None)
        self._turns.append(turn)
        return turn

    def append_tool_result(self, tool_call_id: str, content: str, name: Optional[str] = None) -> ConversationTurn:
        self._ensure_no_partial("append a tool result")
        turn = ConversationTurn(role="tool", content=content, tool_call_id=tool_call_id, name=name)
        self._turns.append(turn)
        return turn

    def append_cache_reference(self, tag: str, reset_ttl: Optional[int] = None) -> ConversationTurn:
        """追加一条上下文缓存引用（role="cache"），格式为 tag=xxx;reset_ttl=N。"""

        self._ensure_no_partial("append a cache reference")
        content = f"tag={tag}"
        if reset_ttl is not None:
            content += f";reset_ttl={int(reset_ttl)}"
        turn = ConversationTurn(role="cache", content=content)
        self._turns.append(turn)
        return turn

    def mark_partial(self, content: str, name: Optional[str] = None) -> ConversationTurn:
        """记录（或更新）唯一的 partial assistant 消息。

        已有 partial 消息时直接覆盖其内容，否则在末尾追加一条新的 partial 消息。
        """

        current = self.partial_turn
        if current is not None:
            idx = self._turns.index(current)
            updated = replace(current, content=content, name=name if name is not None else current.name)
            self._turns[idx] = updated
            return updated
        turn = ConversationTurn(role="assistant", content=content, partial=True, name=name)
        self._turns.append(turn)
        return turn

    def resolve_partial(self, final_text: str) -> ConversationTurn:
        """把 partial 消息定稿为普通 assistant 消息，内容替换为 final_text。"""

        current = self.partial_turn
        if current is None:
            raise ConversationStateError(code="NO_PARTIAL_TURN", message="No partial turn to resolve")
        idx = self._turns.index(current)
        resolved = replace(current, content=final_text, partial=False, name=None)
        self._turns[idx] = resolved
        return resolved

    def clear(self, preserve_system: bool = True) -> None:
        if preserve_system:
            self._turns = [t for t in self._turns if t.role == "system"]
        else:
            self._turns = []

    def set_system_message(self, content: str, replace_existing: bool = True) -> ConversationTurn:
        """设置 system 消息并放到历史最前面。"""

        if replace_existing:
            self._turns = [t for t in self._turns if t.role != "system"]
        turn = ConversationTurn(role="system", content=content)
        self._turns.insert(0, turn)
        return turn

    def prepend(self, turns: Iterable[ConversationTurn]) -> None:
        """把一组消息插入到历史最前面（例如文件内容作为 system 消息）。"""

        incoming = [replace(t) for t in turns]
        if any(t.partial for t in incoming):
            raise ConversationStateError(code="INVALID_PARTIAL", message="Prepended turns cannot be partial")
        self._turns = incoming + self._turns

    # ---- 导入导出 ----

    def export(self) -> List[Dict[str, Any]]:
        return [asdict(t) for t in self._turns]

    @classmethod
    def load(cls, data: Iterable[Dict[str, Any]]) -> "ConversationHistory":
        turns = []
        for item in data:
            calls = item.get("tool_calls") or None
            turns.append(
                ConversationTurn(
                    role=item["role"],
                    content=item.get("content", ""),
                    partial=bool(item.get("partial", False)),
                    name=item.get("name"),
                    tool_call_id=item.get("tool_call_id"),
                    tool_calls=[ToolCall(**c) for c in calls] if calls else None,
                )
            )
        return cls(system_prompt=None, turns=turns)

    # ---- 内部校验 ----

    def _ensure_no_partial(self, action: str) -> None:
        if self.has_partial:
            raise ConversationStateError(
                code="UNRESOLVED_PARTIAL",
                message=f"Cannot {action} while a partial assistant turn is unresolved",
            )

    def _check_partial_invariant(self) -> None:
        partial_idx = [i for i, t in enumerate(self._turns) if t.partial]
        if len(partial_idx) > 1:
            raise ConversationStateError(code="MULTIPLE_PARTIAL", message="At most one partial turn is allowed")
        if partial_idx and partial_idx[0] != len(self._turns) - 1:
            raise ConversationStateError(code="INVALID_PARTIAL", message="The partial turn must be the last turn")
