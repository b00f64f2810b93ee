"""Prompt templates for the agent loop."""

from opendev_agent.models import Project, Question, Task, ToolApprovalSettings


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


SYSTEM_PROMPT_TEMPLATE = """You are an autonomous AI agent that completes software development tasks. You are working on a task for a project.

## Project Information
- Project Name: {project_name}
- Project Description: {project_description}
{project_guidelines}
## Task to Complete
- Title: {task_title}
- Description: {task_description}
- Priority: {task_priority}

## Your Capabilities
You have access to the following tools:

1. **readFile(path)** - Read a file's contents. {readFile}
2. **listDirectory(path)** - List contents of a directory. {listDirectory}
3. **writeFile(path, content)** - Create or overwrite a file. {writeFile}
4. **editFile(path, search, replace)** - Edit a file by replacing text. {editFile}
5. **deleteFile(path)** - Delete a file. {deleteFile}
6. **executeCommand(command, description)** - Run a shell command. {executeCommand}
7. **completeTask(summary)** - Mark the task as complete. {completeTask}
8. **askQuestion(question, context)** - Ask the user a clarifying question. Pauses execution until answered.

## Instructions
1. First, explore the codebase using readFile and listDirectory to understand the project structure
2. Analyze what changes are needed to complete the task
3. If requirements are ambiguous, ask a clarifying question instead of guessing
4. Propose the necessary file modifications and commands
5. When all changes are proposed, call completeTask with a summary

## Important Guidelines
- Always read existing files before modifying them to understand the context
- Make minimal, focused changes that directly address the task
- Follow existing code patterns and conventions in the project
- Provide clear descriptions for any commands you want to execute
- Do NOT make unnecessary changes or refactors
- When editing files, use exact text matches for the search parameter
- A proposed action has not happened yet; do not assume its result

Begin by exploring the project structure and understanding what needs to be done."""


def render(template: str, **values: str) -> str:
    return template.format_map(_SafeFormatDict(values))


def build_system_prompt(project: Project, task: Task, approval: ToolApprovalSettings) -> str:
    policy = {
        name: "Requires user approval." if required else "Executes immediately."
        for name, required in approval.to_wire().items()
    }
    guidelines = f"- Project Guidelines: {project.guidelines}\n" if project.guidelines else ""
    return render(
        SYSTEM_PROMPT_TEMPLATE,
        project_name=project.name,
        project_description=project.description or "No description provided",
        project_guidelines=guidelines,
        task_title=task.title,
        task_description=task.description or "No description provided",
        task_priority=task.priority,
        **policy,
    )


def build_task_prompt(task: Task) -> str:
    return f"Please complete this task: {task.title}\n\n{task.description or ''}".rstrip() + "\n"


def build_answers_turn(questions: list[Question]) -> str:
    """One user turn summarizing every answered question."""
    lines = ["Here are the answers to your clarifying questions:", ""]
    for idx, item in enumerate(questions, start=1):
        lines.append(f"Q{idx}: {item.question}")
        lines.append(f"A{idx}: {item.response or ''}")
        lines.append("")
    lines.append("Continue working on the task using these answers.")
    return "\n".join(lines)
