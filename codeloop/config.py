"""Configuration management for codeloop."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from codeloop.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.codeloop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "codeloop.yaml"


class ModelConfig(BaseModel):
    """OpenAI-compatible endpoint configuration."""

    base_url: str = "http://localhost:8000/v1/"
    api_key: str = ""
    model: str = "qwen3-coder"
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout_seconds: int = 120
    stream: bool = True


class AgentConfig(BaseModel):
    """Agent loop limits and budgets."""

    max_iterations: int = 25
    max_token_budget: int = 32000
    # Share of the token budget handed to conversation history; the rest is
    # left for the system prompt.
    conversation_budget_ratio: float = 0.85
    keep_recent_messages: int = 10
    max_retries: int = 2
    retry_delays_ms: list[int] = Field(default_factory=lambda: [1000, 3000])
    tool_timeout_seconds: float = 60.0
    max_consecutive_mistakes: int = 3
    max_consecutive_no_tool: int = 2
    max_tool_result_chars: int = 8000
    step_queue_size: int = 64


class PolicyConfig(BaseModel):
    """Heuristic policy knobs for text suppression, intent detection and tool naming."""

    suppression_threshold_chars: int = 100
    conversational_max_chars: int = 20
    task_keywords: list[str] = [
        # Chinese
        "文件", "代码", "读", "写", "编辑", "修改", "创建", "删除", "搜索", "查找", "查看",
        "运行", "执行", "构建", "编译", "测试", "分析", "重构", "调试", "打开", "关闭",
        "添加", "移除", "更新", "生成", "实现", "修复", "优化", "部署", "安装", "配置",
        "项目", "目录", "函数", "类", "方法", "变量", "错误", "bug", "报错",
        # English
        "file", "code", "read", "write", "edit", "create", "delete", "search", "find",
        "run", "exec", "build", "compile", "test", "debug", "refactor", "fix",
        "list", "grep", "dir", "open", "close", "add", "remove", "update", "generate",
        "implement", "deploy", "install", "config", "project", "class", "function",
        "method", "variable", "error", "help me", "帮我", "请帮",
    ]
    recursive_keywords: list[str] = [
        "完整", "全部", "递归", "目录树", "结构", "树形", "所有",
        "full", "complete", "recursive", "tree", "entire", "all",
    ]
    completion_tool: str = "attempt_completion"
    condense_tool: str = "condense"
    edit_tools: list[str] = ["edit", "write_to_file"]
    recursive_listing_tool: str = "list_dir"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for codeloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CODELOOP_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; pydantic-settings layers env vars on top."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def conversation_budget(self) -> int:
        """Token budget reserved for conversation history."""
        return int(self.agent.max_token_budget * self.agent.conversation_budget_ratio)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
