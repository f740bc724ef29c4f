"""
Pytest configuration and fixtures for RLM Security Audit tests.
"""

import tempfile
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from rlm_audit.budget import Budget
from rlm_audit.common_types import Finding, Severity, SourceFile
from rlm_audit.config import AuditConfig
from rlm_audit.file_collector import FileCollector
from rlm_audit.llm_client import AssistantMessage, QueryExecutor


class FakeModelClient:
    """
    Scripted stand-in for ModelClient.

    `script` is either a list consumed one entry per call or a callable
    (system_prompt, messages, tools) -> entry. An entry may be a string
    (plain text reply), an AssistantMessage, or an exception to raise.
    Running out of scripted entries yields an empty reply.
    """

    def __init__(self, script: list[Any] | Callable[..., Any] | None = None):
        self.script = script if script is not None else []
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def complete(self, system_prompt, messages, tools=None, max_tokens=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": [dict(m) for m in messages],
            "tools": tools,
        })

        if callable(self.script):
            entry = self.script(system_prompt, messages, tools)
        elif self.script:
            entry = self.script.pop(0)
        else:
            entry = ""

        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, AssistantMessage):
            return entry
        return AssistantMessage(text=entry)

    async def close(self) -> None:
        self.closed = True

    @property
    def prompts(self) -> list[str]:
        """Last user message content of every call."""
        return [call["messages"][-1]["content"] for call in self.calls]


def make_finding(
    file: str = "src/app.py",
    line: int = 1,
    rule: str = "R",
    severity: Severity = Severity.HIGH,
    message: str = "issue",
    snippet: str = "",
) -> Finding:
    return Finding(
        file=file,
        line=line,
        column=1,
        severity=severity,
        category="Test",
        message=message,
        rule=rule,
        snippet=snippet,
    )


@pytest.fixture
def audit_config() -> AuditConfig:
    """Create a test configuration independent of the environment."""
    return AuditConfig(
        api_key="test-api-key",
        api_base_url="http://localhost:9/v1",
        model="test-model",
        request_timeout_seconds=5,
        max_iterations=30,
        concurrency=3,
        max_depth=2,
        max_chars_per_chunk=100_000,
        max_file_chars=50_000,
        agent_max_iterations=10,
        repl_max_iterations=5,
        strategies=["pipeline"],
        min_severity="info",
        baseline_path=None,
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_project(temp_dir: Path) -> Path:
    """A small web project with auth, db and api modules."""
    files = {
        "src/auth/login.py": (
            "import hashlib\n"
            "\n"
            "def login(username, password, db):\n"
            "    user = db.find_user(username)\n"
            "    if user and user.password == hashlib.md5(password.encode()).hexdigest():\n"
            "        return create_session(user)\n"
            "    return None\n"
        ),
        "src/auth/session.py": (
            "SESSIONS = {}\n"
            "\n"
            "def create_session(user):\n"
            "    token = str(user.id)\n"
            "    SESSIONS[token] = user\n"
            "    return token\n"
        ),
        "src/db/queries.py": (
            "def find_user(conn, username):\n"
            "    cursor = conn.cursor()\n"
            "    cursor.execute(\"SELECT * FROM users WHERE name = '\" + username + \"'\")\n"
            "    return cursor.fetchone()\n"
        ),
        "src/api/routes.js": (
            "const express = require('express');\n"
            "const router = express.Router();\n"
            "\n"
            "router.get('/admin/users', (req, res) => {\n"
            "  res.json(db.allUsers());\n"
            "});\n"
            "\n"
            "module.exports = router;\n"
        ),
        "README.md": "# Sample\n",
        "node_modules/lib/index.js": "module.exports = {};\n",
        "tests/test_login.py": "def test_login():\n    assert True\n",
    }
    for relative, content in files.items():
        path = temp_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return temp_dir


@pytest.fixture
def file_collector(audit_config: AuditConfig) -> FileCollector:
    """FileCollector without token counting (tiktoken would fetch encodings)."""
    return FileCollector(audit_config, track_tokens=False)


@pytest.fixture
def scripted_client() -> type[FakeModelClient]:
    """The FakeModelClient class; call it with a script."""
    return FakeModelClient


@pytest.fixture
def make_executor(audit_config: AuditConfig) -> Callable[..., QueryExecutor]:
    """Build a QueryExecutor over a FakeModelClient with its own Budget."""
    def _make(client: FakeModelClient, max_iterations: int = 30, concurrency: int = 3) -> QueryExecutor:
        budget = Budget(max_iterations=max_iterations, concurrency=concurrency)
        return QueryExecutor(client, budget, audit_config)
    return _make


@pytest.fixture
def finding_factory() -> Callable[..., Finding]:
    return make_finding


@pytest.fixture
def corpus() -> list[SourceFile]:
    return [
        SourceFile.from_content("src/auth/login.py", "def login():\n    pass\n"),
        SourceFile.from_content("src/db/queries.py", "def query():\n    pass\n"),
        SourceFile.from_content("src/api/routes.js", "router.get('/');\n"),
    ]
