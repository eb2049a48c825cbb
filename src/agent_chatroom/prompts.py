"""Prompt provider boundary: the supervisor only ever sees opaque text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from agent_chatroom.tasks.models import TaskView

ROLE_PROMPT = """\
You are the {role} in chatroom {chatroom_id}.
Team: {team}.

Work only on tasks assigned to the {role} role. Claim a task before starting
it, and report completion through the chatroom so the next role can pick up.
{guidance}"""

_ROLE_GUIDANCE = {
    "planner": (
        "Break user requests into concrete tasks and hand each one to the role "
        "best placed to do it."
    ),
    "builder": (
        "Hand off to the reviewer after making code changes. Hand off to the user "
        "for questions that need no code changes."
    ),
    "reviewer": (
        "Hand off to the user when the change is approved. Send it back to the "
        "builder with specific feedback when it is not."
    ),
}

INITIAL_MESSAGE = """\
Task {task_id} ({origin}, {status}):

{content}"""

WAIT_MESSAGE = "No task is assigned to you yet. Wait for the next task for the {role} role."


@dataclass(slots=True)
class PromptContext:
    chatroom_id: str
    role: str
    team_roles: tuple[str, ...]
    task: TaskView | None = None


class PromptProvider(Protocol):
    """Produces the role prompt and first message handed to an agent at spawn."""

    def role_prompt(self, context: PromptContext) -> str:
        """System-style instructions for the role."""

    def initial_message(self, context: PromptContext) -> str:
        """First user-style message, usually the task at hand."""


class RolePromptProvider:
    """Minimal built-in templates; real deployments plug in their own provider."""

    def role_prompt(self, context: PromptContext) -> str:
        return ROLE_PROMPT.format(
            role=context.role,
            chatroom_id=context.chatroom_id,
            team=", ".join(context.team_roles),
            guidance=_ROLE_GUIDANCE.get(context.role.lower(), ""),
        )

    def initial_message(self, context: PromptContext) -> str:
        task = context.task
        if task is None:
            return WAIT_MESSAGE.format(role=context.role)
        return INITIAL_MESSAGE.format(
            task_id=task.task_id,
            origin=task.origin.value,
            status=task.status.value,
            content=task.content or "(no description)",
        )
