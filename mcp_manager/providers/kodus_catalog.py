"""Static catalog of the Kodus MCP server: default integration and its tools."""

from typing import List
from typing import Tuple

from mcp_manager.providers.types import MCPIntegration
from mcp_manager.providers.types import MCPTool
from mcp_manager.providers.types import ProviderType

DEFAULT_INTEGRATION_ID = "kd_mcp_oTUrzqsaxTg"
DEFAULT_INTEGRATION_NAME = "Kodus MCP"
DEFAULT_INTEGRATION_DESCRIPTION = (
    "Manage integrations, manage connections, and manage tools with Kodus MCP integration."
)
DEFAULT_INTEGRATION_LOGO = "https://t5y4w6q9.delivery.rocketcdn.me/wp-content/uploads/2023/11/Kodus-logo-light.png.webp"

# Substrings that mark a tool as destructive or otherwise worth a confirmation.
WARNING_KEYWORDS = (
    "delete",
    "remove",
    "archive",
    "destroy",
    "drop",
    "clear",
    "erase",
    "purge",
    "terminate",
    "kill",
    "stop",
    "disable",
    "suspend",
    "revoke",
    "cancel",
    "reject",
    "deny",
    "block",
    "ban",
    "uninstall",
    "reset",
    "revert",
    "undo",
    "rollback",
    "flush",
    "wipe",
    "truncate",
)

_TOOLS: List[Tuple[str, str, str]] = [
    (
        "KODUS_LIST_REPOSITORIES",
        "List Repositories",
        "List the repositories connected to the organization, with their provider and default branch.",
    ),
    (
        "KODUS_LIST_PULL_REQUESTS",
        "List Pull Requests",
        "List pull requests of a repository, filterable by state, author and date range.",
    ),
    (
        "KODUS_LIST_COMMITS",
        "List Commits",
        "List commits of a repository or branch, filterable by author and date range.",
    ),
    (
        "KODUS_GET_PULL_REQUEST",
        "Get Pull Request",
        "Get the details of a single pull request: title, description, branches, author and status.",
    ),
    (
        "KODUS_GET_REPOSITORY_FILES",
        "Get Repository Files",
        "List the file tree of a repository at a branch, optionally filtered by glob patterns.",
    ),
    (
        "KODUS_GET_REPOSITORY_CONTENT",
        "Get Repository Content",
        "Get the content of a single file of a repository at a branch.",
    ),
    (
        "KODUS_GET_REPOSITORY_LANGUAGES",
        "Get Repository Languages",
        "Get the programming languages used in a repository and their share of the code base.",
    ),
    (
        "KODUS_GET_PULL_REQUEST_FILE_CONTENT",
        "Get Pull Request File Content",
        "Get the content of a file as modified by a pull request.",
    ),
    (
        "KODUS_GET_DIFF_FOR_FILE",
        "Get Diff For File",
        "Get the diff of a single file changed by a pull request.",
    ),
    (
        "KODUS_GET_PULL_REQUEST_DIFF",
        "Get Pull Request Diff",
        "Get the complete diff of a pull request across all changed files.",
    ),
    (
        "KODUS_GET_KODY_RULES",
        "Get Kody Rules",
        "List the organization-level Kody Rules used during code review.",
    ),
    (
        "KODUS_GET_KODY_RULES_REPOSITORY",
        "Get Repository Kody Rules",
        "List the Kody Rules that apply to a specific repository.",
    ),
    (
        "KODUS_CREATE_KODY_RULE",
        "Create Kody Rule",
        "Create a Kody Rule with title, instructions, severity and the paths it applies to.",
    ),
    (
        "KODUS_UPDATE_KODY_RULE",
        "Update Kody Rule",
        "Update the title, instructions, severity or scope of an existing Kody Rule.",
    ),
    (
        "KODUS_DELETE_KODY_RULE",
        "Delete Kody Rule",
        "Permanently delete a Kody Rule. This cannot be undone.",
    ),
]


def has_warning(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in WARNING_KEYWORDS)


def default_tools() -> List[MCPTool]:
    return [
        MCPTool(
            slug=slug,
            name=name,
            description=description,
            provider=ProviderType.KODUSMCP.value,
            warning=has_warning(slug),
        )
        for slug, name, description in _TOOLS
    ]


def default_tool_slugs() -> List[str]:
    return [slug for slug, _, _ in _TOOLS]


def default_integration() -> MCPIntegration:
    return MCPIntegration(
        id=DEFAULT_INTEGRATION_ID,
        name=DEFAULT_INTEGRATION_NAME,
        provider=ProviderType.KODUSMCP.value,
        app_name=DEFAULT_INTEGRATION_NAME,
        description=DEFAULT_INTEGRATION_DESCRIPTION,
        auth_scheme="OAUTH",
        logo=DEFAULT_INTEGRATION_LOGO,
        allowed_tools=default_tool_slugs(),
        is_default=True,
    )
