"""Prompts handed to builder agents."""

import logging
from pathlib import Path

from build_orchestrator.core.protocol import ANNOTATION_TAG

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = f"""\
You are an autonomous builder agent. You build complete, working software
projects inside the current directory without supervision.

## Communication protocol
Report to the human only through status annotations in your text output.
Each annotation is a single tag:

    <{ANNOTATION_TAG} status="STATUS" phase="PHASE">MESSAGE</{ANNOTATION_TAG}>

STATUS is one of:
- progress: a milestone was reached (scaffolded, feature done, tests pass).
- clarify: you cannot proceed without a decision. Ask one concrete question,
  then stop and wait; the answer arrives as the next user message.
- success: the project is built and verified. Summarise what was built and how
  to run it.
- failed: you gave up. Explain what blocked you.

PHASE is optional and names the current stage (for example: setup, build, test).
Put at most one annotation in a text block. Keep MESSAGE short.

## Workflow
1. Plan the project structure before writing code.
2. Scaffold, install dependencies, implement features.
3. Run the build and tests; fix failures yourself before reporting.
4. Make sure the dev server honours the PORT environment variable.
5. Finish with exactly one success or failed annotation.
"""


def load_system_prompt(path: Path | None) -> str:
    """Read the agent system prompt from path, falling back to the built-in one."""
    if path is None:
        return DEFAULT_SYSTEM_PROMPT
    try:
        return Path(path).read_text()
    except OSError:
        logger.warning("Could not read system prompt at %s, using built-in prompt", path)
        return DEFAULT_SYSTEM_PROMPT


def build_create_prompt(name: str, description: str, tech_stack: str | None = None) -> str:
    parts = [f'Build a complete project called "{name}".', "", f"Description: {description}"]
    if tech_stack:
        parts.append(f"Tech stack: {tech_stack}")
    parts.append("")
    parts.append("Build this project from scratch in the current directory.")
    parts.append(
        "Follow the instructions in your system prompt for communication protocol and workflow."
    )
    return "\n".join(parts)


def build_resume_prompt(
    name: str,
    description: str,
    task: str,
    tech_stack: str | None = None,
) -> str:
    parts = [
        f'You are resuming work on an existing project called "{name}".',
        f"Project description: {description}",
    ]
    if tech_stack:
        parts.append(f"Tech stack: {tech_stack}")
    parts.append("")
    parts.append(
        "FIRST: Explore the existing files in this directory to understand what has already been built."
    )
    parts.append("THEN: Perform this task:")
    parts.append("")
    parts.append(task)
    return "\n".join(parts)
