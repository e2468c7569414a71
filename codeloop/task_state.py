"""Per-task counters owned by a single run of the agent loop."""

from dataclasses import dataclass


@dataclass
class TaskState:
    """Mutable bookkeeping for one task; created at start, dropped at the end."""

    iteration: int = 0
    api_request_count: int = 0
    consecutive_mistake_count: int = 0
    max_consecutive_mistakes: int = 3
    consecutive_no_tool_count: int = 0
    max_consecutive_no_tool: int = 2
    has_ever_used_tools: bool = False
    did_edit_file: bool = False
    is_completed: bool = False
    abort: bool = False
    last_tool_name: str = ""

    def reset_mistake_count(self) -> None:
        self.consecutive_mistake_count = 0

    def increment_mistake_count(self) -> bool:
        """Count a failed tool call; True once the threshold is reached."""
        self.consecutive_mistake_count += 1
        return self.mistake_threshold_reached

    @property
    def mistake_threshold_reached(self) -> bool:
        return self.consecutive_mistake_count >= self.max_consecutive_mistakes

    def record_no_tools_used(self) -> bool:
        """Count a tool-less reply; True once the tolerance is exceeded."""
        self.consecutive_no_tool_count += 1
        return self.consecutive_no_tool_count > self.max_consecutive_no_tool

    def reset_no_tool_count(self) -> None:
        self.consecutive_no_tool_count = 0
