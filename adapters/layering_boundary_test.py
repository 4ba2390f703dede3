"""Layering boundary verification for the chat-stream modules.

INVARIANTS:
- Data flows downstream only. stream_decoder knows nothing about sessions,
  transports or the client; chat_session knows nothing about decoding.
- The client makes a single attempt per send. No retry loop, no backoff.

This suite scans module imports and sources with ast/inspect.
"""

import ast
import importlib
import inspect
import os
import sys
import textwrap

import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

PROJECT_MODULES = {
    "stream_decoder",
    "chat_session",
    "config_loader",
    "chat_client",
    "symptom_responder",
    "chat_stub_server",
    "chat_cli",
}

# Module -> project/third-party modules it must never import
FORBIDDEN_IMPORTS = {
    "stream_decoder": PROJECT_MODULES - {"stream_decoder"} | {"httpx", "fastapi", "starlette"},
    "chat_session": PROJECT_MODULES - {"chat_session"} | {"httpx"},
    "config_loader": PROJECT_MODULES - {"config_loader"} | {"httpx"},
    "symptom_responder": PROJECT_MODULES - {"symptom_responder"},
    "chat_client": {"chat_stub_server", "chat_cli", "symptom_responder"},
}


def _imported_modules(module_name):
    mod = importlib.import_module(module_name)
    with open(inspect.getfile(mod)) as f:
        tree = ast.parse(f.read())

    names = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names.update(alias.name.split(".")[0] for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module:
            names.add(node.module.split(".")[0])
    return names


class TestImportDirection:
    """Verify no component imports an upstream one."""

    @pytest.mark.parametrize("module_name", sorted(FORBIDDEN_IMPORTS))
    def test_no_forbidden_imports(self, module_name):
        imported = _imported_modules(module_name)
        forbidden = imported & FORBIDDEN_IMPORTS[module_name]
        assert not forbidden, (
            f"Module '{module_name}' imports {sorted(forbidden)}; "
            f"data must flow downstream only."
        )


class TestSingleAttempt:
    """Verify the client never retries a send."""

    def test_no_retry_attributes(self):
        import chat_client
        for name in ("retry", "max_retries", "backoff", "invoke_with_retry"):
            assert not hasattr(chat_client, name)

    def test_no_sleep_or_loop_around_request(self):
        import chat_client

        source = inspect.getsource(chat_client.ChatStreamClient.send_message)
        tree = ast.parse(textwrap.dedent(source))

        for node in ast.walk(tree):
            assert not isinstance(node, ast.While), "send_message must not loop on requests"
            if isinstance(node, ast.Attribute):
                assert node.attr != "sleep", (
                    f"send_message sleeps at line {node.lineno}; sends are single-attempt."
                )
