"""Default template, prompts and swarm written by ``ppg init``."""

from __future__ import annotations

DEFAULT_TEMPLATE = """# Task: {{TASK_NAME}}

## Context
You are working in a git worktree at: {{WORKTREE_PATH}}
Branch: {{BRANCH}}
Project root: {{PROJECT_ROOT}}

## Instructions
{{PROMPT}}
"""

BUNDLED_PROMPTS: dict[str, str] = {
    "review-quality": """# Code Quality Review

## What to Review
{{CONTEXT}}

## Your Focus
You are a senior engineer reviewing code for quality, readability, and maintainability.

- Code clarity and naming conventions
- Function and module organization
- Error handling completeness
- Unnecessary complexity and duplication
- Documentation gaps for non-obvious logic

## Output
Write a structured review with specific file:line references and improvement suggestions.
""",
    "review-security": """# Security Review

## What to Review
{{CONTEXT}}

## Your Focus
You are a security engineer reviewing code for vulnerabilities and risks.

- Input validation and sanitization
- Injection vulnerabilities (SQL, XSS, command)
- Authentication and authorization issues
- Sensitive data exposure
- Secrets or credentials in code

## Output
Write a structured review with severity ratings and remediation guidance.
""",
    "review-regression": """# Regression & Risk Review

## What to Review
{{CONTEXT}}

## Your Focus
You are a QA engineer reviewing code for regression risks and test coverage gaps.

- Behavioral changes that could break existing functionality
- Edge cases and boundary conditions not covered
- Missing or inadequate test coverage
- Integration points that may be affected

## Output
Write a structured review with risk ratings and recommended test additions.
""",
}

BUNDLED_SWARMS: dict[str, str] = {
    "code-review": """name: code-review
description: Multi-perspective code review
strategy: shared

agents:
  - prompt: review-quality
  - prompt: review-security
  - prompt: review-regression
""",
}

GITIGNORE_ENTRIES = [
    ".ppg/results/",
    ".ppg/logs/",
    ".ppg/manifest.json",
    ".ppg/manifest.json.lock",
    ".ppg/agent-prompts/",
    ".ppg/exits/",
    ".ppg/cron.pid",
    ".worktrees/",
]
