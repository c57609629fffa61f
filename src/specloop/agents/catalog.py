from __future__ import annotations

from specloop.agents.base import AgentDefinition, UnknownAgentError

CLAUDE = AgentDefinition(
    type="claude",
    name="Claude Code",
    program="claude",
    base_args=("-p", "--dangerously-skip-permissions", "--output-format=stream-json"),
    model_flag="--model",
    verbose_flag="--verbose",
    install_hint=(
        "Install Claude Code:\n"
        "  npm install -g @anthropic-ai/claude-code\n\n"
        "Then authenticate:\n"
        "  claude login"
    ),
)

CODEX = AgentDefinition(
    type="codex",
    name="Codex",
    program="codex",
    base_args=("exec", "--json", "--dangerously-bypass-approvals-and-sandbox"),
    model_flag="--model",
    install_hint=(
        "Install Codex CLI:\n"
        "  npm install -g @openai/codex\n\n"
        "Then authenticate:\n"
        "  codex login"
    ),
)

GEMINI = AgentDefinition(
    type="gemini",
    name="Gemini CLI",
    program="gemini",
    base_args=("--output-format", "stream-json", "--yolo"),
    model_flag="--model",
    install_hint=(
        "Install Gemini CLI:\n"
        "  npm install -g @google/gemini-cli\n"
        "  # or: brew install gemini-cli\n\n"
        "Then authenticate:\n"
        "  gemini auth login"
    ),
)

CURSOR = AgentDefinition(
    type="cursor",
    name="Cursor Agent",
    program="agent",
    base_args=("-p", "--force", "--output-format", "json"),
    model_flag="--model",
    install_hint=(
        "Install Cursor Agent CLI:\n"
        "  curl https://cursor.com/install -fsS | bash"
    ),
)

DROID = AgentDefinition(
    type="droid",
    name="Factory Droid",
    program="droid",
    base_args=("exec", "--skip-permissions-unsafe", "-o", "stream-json"),
    model_flag="-m",
    install_hint=(
        "Install Factory Droid:\n"
        "  curl -fsSL https://app.factory.ai/cli | sh\n\n"
        "Then authenticate:\n"
        "  droid login"
    ),
)

# amp selects behaviour through named modes rather than free-form model ids.
AMP = AgentDefinition(
    type="amp",
    name="Amp",
    program="amp",
    base_args=("--execute", "--stream-json", "--dangerously-allow-all"),
    model_flag="--mode",
    model_choices=frozenset({"smart", "rush"}),
    install_hint=(
        "Install Amp:\n"
        "  curl -fsSL https://ampcode.com/install.sh | bash\n"
        "  # or: npm install -g @sourcegraph/amp"
    ),
)

OPENCODE = AgentDefinition(
    type="opencode",
    name="OpenCode",
    program="opencode",
    base_args=("run", "--format", "json"),
    model_flag="--model",
    install_hint=(
        "Install OpenCode:\n"
        "  npm install -g opencode-ai\n"
        "  # or: curl -fsSL https://opencode.ai/install | bash\n\n"
        "Then authenticate:\n"
        "  opencode auth login"
    ),
)

AGENTS: dict[str, AgentDefinition] = {
    agent.type: agent for agent in (CLAUDE, CODEX, GEMINI, CURSOR, DROID, AMP, OPENCODE)
}


def get_agent(agent_type: str) -> AgentDefinition:
    try:
        return AGENTS[agent_type]
    except KeyError as exc:
        supported = ", ".join(sorted(AGENTS))
        raise UnknownAgentError(
            f"Unknown agent '{agent_type}'. Supported agents: {supported}",
            agent=agent_type,
        ) from exc


def all_agents() -> list[AgentDefinition]:
    return list(AGENTS.values())
