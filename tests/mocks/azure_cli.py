"""
Fake Azure CLI for testing.

FakeRunner implements the CommandRunner protocol from scripted responses and
records every command, so tests can assert on exactly which ``az`` calls a
component made without touching Azure.
"""

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any


class FakeRunner:
    """CommandRunner that answers from scripted responses.

    Responses are registered against a command prefix. When several prefixes
    match, the longest wins. A list of responses is consumed in order and its
    last entry repeats. Exceptions are raised, callables are called with the
    full argument list.
    """

    def __init__(self, default: Any = None):
        self.calls: list[list[str]] = []
        self.default = default
        self._rules: dict[tuple[str, ...], list[Any]] = {}

    def on(self, *prefix: str, result: Any = None, results: Sequence[Any] | None = None) -> "FakeRunner":
        self._rules[tuple(prefix)] = list(results) if results is not None else [result]
        return self

    def invoke(self, args: Sequence[str], *, timeout: int | None = None) -> Any:
        args = list(args)
        self.calls.append(args)

        matches = [p for p in self._rules if tuple(args[: len(p)]) == p]
        if not matches:
            return self.default
        queue = self._rules[max(matches, key=len)]
        response = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(args)
        return response

    def calls_to(self, *prefix: str) -> list[list[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    def called(self, *prefix: str) -> bool:
        return bool(self.calls_to(*prefix))


def write_download(content: str = "setup output") -> Callable[[list[str]], None]:
    """Response for ``storage blob download`` that writes the --file target."""

    def download(args: list[str]) -> None:
        Path(args[args.index("--file") + 1]).write_text(content)

    return download


SUBSCRIPTION_ID = "00000000-1111-2222-3333-444444444444"
APP_ID = "11111111-aaaa-bbbb-cccc-222222222222"
SP_OBJECT_ID = "33333333-dddd-eeee-ffff-444444444444"
VAULT_ID = f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/testrg/providers/Microsoft.KeyVault/vaults/testkv"
VAULT_URI = "https://testkv.vault.azure.net/"
KEK_URI = "https://testkv.vault.azure.net/keys/testkek/0123456789abcdef"


def script_provisioning(runner: FakeRunner) -> FakeRunner:
    """Register happy-path responses for every provisioning command."""
    runner.on(
        "account",
        "show",
        result={
            "id": SUBSCRIPTION_ID,
            "name": "Test Subscription",
            "tenantId": "tenant",
            "user": {"name": "tester@example.com"},
        },
    )
    runner.on("group", "create", result={"name": "testrg", "properties": {"provisioningState": "Succeeded"}})
    runner.on("ad", "app", "create", result={"appId": APP_ID, "displayName": "testadapp"})
    runner.on("ad", "app", "credential", "reset", result={"appId": APP_ID, "password": "generated-secret"})
    runner.on("ad", "sp", "create", result={"id": SP_OBJECT_ID, "appId": APP_ID})
    runner.on("role", "assignment", "create", result={"id": "role-assignment-id"})
    runner.on("keyvault", "create", result={"id": VAULT_ID, "properties": {"vaultUri": VAULT_URI}})
    runner.on("keyvault", "key", "create", result={"key": {"kid": KEK_URI}})
    runner.on("storage", "account", "keys", "list", result=[{"keyName": "key1", "value": "c3RvcmFnZWtleQ=="}])
    runner.on("storage", "blob", "url", result="https://teststg.blob.core.windows.net/container/blob")
    runner.on("storage", "blob", "generate-sas", result="se=2030-01-01T23%3A59Z&sp=r&sig=abc")
    runner.on("storage", "blob", "exists", result={"exists": True})
    runner.on("storage", "blob", "download", result=write_download())
    return runner
