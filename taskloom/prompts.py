"""Built-in prompt templates, resolved by name and variant."""
import json
from typing import Any, Callable, Dict, List, Protocol

from .errors import ValidationError
from .models import PromptPair, Task
from .utils import truncate

PromptBuilder = Callable[[Dict[str, Any]], PromptPair]


class PromptResolver(Protocol):
    def load_prompt(self, name: str, params: Dict[str, Any], variant: str = "default") -> PromptPair: ...


RESEARCH_GUIDANCE = """
Leverage your knowledge of current best practices, libraries and common implementation patterns relevant to the work described.
Prefer concrete, up-to-date technical recommendations over generic advice.
"""

JSON_ONLY = "Respond ONLY with valid JSON. Do not include explanations, markdown prose or commentary outside the JSON."


def _context_block(params: Dict[str, Any]) -> str:
    gathered = params.get("gathered_context") or ""
    if not gathered:
        return ""
    return f"\n# Project Context\n\n{gathered}\n"


# --- parse-prd ---
def _parse_prd(params: Dict[str, Any], research: bool) -> PromptPair:
    num_tasks = params["num_tasks"]
    next_id = params.get("next_id", 1)
    system_prompt = f"""You are an AI assistant helping to break down a Product Requirements Document (PRD) into sequential development tasks.
Your goal is to create approximately {num_tasks} well-structured, actionable development tasks based on the PRD provided.
{RESEARCH_GUIDANCE if research else ''}
Each task should have the following fields:
- id: (sequential integer starting from {next_id})
- title: (string)
- description: (string)
- details: (string - implementation details)
- testStrategy: (string - validation approach)
- priority: "high" | "medium" | "low" (default "{params.get('default_priority', 'medium')}")
- dependencies: List[int] (ids of tasks this depends on; only lower ids)
- status: "pending"

Guidelines:
1. Generate roughly {num_tasks} tasks, numbered sequentially starting from {next_id}.
2. Ensure tasks are atomic and focus on a single responsibility.
3. Order tasks logically, prioritizing setup and core functionality first.
4. Assign dependencies only to tasks with lower ids. Ensure no circular dependencies.
5. Include detailed implementation guidance in "details" and a clear validation approach in "testStrategy".
6. Fill in gaps the PRD leaves open, but do not invent features it does not ask for.

{JSON_ONLY} The top-level object must be {{"tasks": [...], "metadata": {{"projectName": ..., "totalTasks": ..., "sourceFile": ..., "generatedAt": ...}}}}.
"""
    user_prompt = f"""Here's the Product Requirements Document (PRD) to break down into approximately {num_tasks} tasks, starting ids from {next_id}:

{params['prd_content']}
{_context_block(params)}
Return your response in the JSON format described above."""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


# --- expand-task ---
def _expand_task(params: Dict[str, Any], research: bool) -> PromptPair:
    task: Task = params["task"]
    subtask_count = params["subtask_count"]
    additional_context = params.get("additional_context") or ""

    system_prompt = f"""You are an AI assistant expert in breaking down software development tasks.
Your goal is to generate {subtask_count} specific, actionable subtasks for the given parent task.
{RESEARCH_GUIDANCE if research else ''}
Subtasks should include:
- id: (sequential integer starting from 1)
- title: (string)
- description: (string)
- details: (string - implementation guidance)
- acceptanceCriteria: (string - how to verify this subtask is done)
- dependencies: List[int] (ids of *sibling* subtasks generated in this batch)

Guidelines:
1. Create {subtask_count} specific, actionable implementation steps.
2. Ensure a logical sequence for implementation.
3. Collectively cover the parent task's requirements.
4. Define dependencies between subtasks using their sequential ids. Use `[]` for no dependencies.

{JSON_ONLY} The top-level object must be {{"subtasks": [...]}}.
"""
    user_prompt = f"""Please break down the following parent task into exactly {subtask_count} specific, actionable subtasks:

**Parent Task ID:** {task.id}
**Parent Task Title:** {task.title}
**Parent Task Description:** {task.description or 'N/A'}
**Parent Task Details:**
```
{task.details or 'No details provided.'}
```
**Parent Task Test Strategy:**
```
{task.testStrategy or 'No test strategy provided.'}
```

**Additional Context:**
```
{additional_context or 'None provided.'}
```
{_context_block(params)}
Generate a list of {subtask_count} subtask objects with ids starting from 1."""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


# --- analyze-complexity ---
def _analyze_complexity(params: Dict[str, Any], research: bool) -> PromptPair:
    tasks: List[Task] = params["tasks"]
    system_prompt = f"""You are an expert software architect analyzing task complexity. Assess each task based on ambiguity, technical difficulty, dependencies, and scope.

For each task, provide:
- taskId: The original task ID.
- taskTitle: The original task title.
- complexityScore: Integer score from 1 (simple) to 10 (very complex).
- recommendedSubtasks: Integer number of subtasks (e.g., 3-7) appropriate for the complexity.
- expansionPrompt: A concise, specific prompt to guide an AI in generating high-quality subtasks for *this specific task*.
- reasoning: Brief justification for the complexity score.
{RESEARCH_GUIDANCE if research else ''}
{JSON_ONLY} Return a JSON array with exactly one object per task.
"""
    tasks_input_str = "\n---\n".join([
        f"Task ID: {task.id}\nTitle: {task.title}\nDescription: {truncate(task.description, 150)}\nDetails: {truncate(task.details, 200)}\nDependencies: {task.dependencies or []}\nPriority: {task.priority or ''}"
        for task in tasks
    ])
    user_prompt = f"""Please analyze the complexity of the following {len(tasks)} tasks:

{tasks_input_str}
{_context_block(params)}
Generate the analysis array."""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


# --- update-task ---
def _update_task(params: Dict[str, Any], research: bool) -> PromptPair:
    task: Task = params["task"]
    system_prompt = f"""You are an AI assistant helping to update a software development task based on new context or requirement changes.
Update the task provided based on the user's prompt. Modify ONLY the necessary fields (`title`, `description`, `details`, `testStrategy`, `subtasks`).
Do NOT change `id`, `status`, `dependencies` or `priority` unless explicitly instructed.
Subtasks marked "done" must be preserved exactly; add new subtasks instead of modifying completed ones.
{RESEARCH_GUIDANCE if research else ''}
{JSON_ONLY} Return the complete updated task as a single JSON object.
"""
    user_prompt = f"""Here is the task to update:
```json
{json.dumps(task.model_dump(mode='json', exclude_none=True), indent=2)}
```
Please update this task based on the following new context or requirement change:
```
{params['update_prompt']}
```
{_context_block(params)}
Return only the updated task as a valid JSON object."""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


def _update_task_append(params: Dict[str, Any]) -> PromptPair:
    task: Task = params["task"]
    system_prompt = """You are an AI assistant adding implementation notes to an existing software development task.
Write ONLY the new information requested, as plain text. Do not repeat the existing details, do not return JSON and do not add a preamble."""
    user_prompt = f"""Task {task.id}: {task.title}
Description: {task.description or 'N/A'}

Current details:
{task.details or '(No existing details)'}

Information to add:
{params['update_prompt']}
{_context_block(params)}"""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


# --- update-subtask ---
def _update_subtask(params: Dict[str, Any], research: bool) -> PromptPair:
    parent = params["parent_task"]
    prev_subtask = params.get("prev_subtask")
    next_subtask = params.get("next_subtask")
    system_prompt = f"""You are an AI assistant adding timestamped implementation notes to a subtask.
Write ONLY the new information requested, as plain text, building on the subtask's current details.
{RESEARCH_GUIDANCE if research else ''}Do not return JSON and do not repeat the existing details."""
    neighbours = ""
    if prev_subtask:
        neighbours += f"Previous subtask: {prev_subtask['id']} {prev_subtask['title']} [{prev_subtask['status']}]\n"
    if next_subtask:
        neighbours += f"Next subtask: {next_subtask['id']} {next_subtask['title']} [{next_subtask['status']}]\n"
    user_prompt = f"""Parent task: {parent['id']} - {parent['title']}
{neighbours}
Current subtask details:
{params.get('current_details') or '(No existing details)'}

Information to add:
{params['update_prompt']}
{_context_block(params)}"""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


# --- add-task ---
def _add_task(params: Dict[str, Any], research: bool) -> PromptPair:
    existing: List[Task] = params.get("existing_tasks") or []
    new_id = params["new_id"]
    system_prompt = f"""You are a helpful assistant that creates well-structured tasks for a software development project.
Generate a single new task (task {new_id}) from the user's description. The task should fit the existing plan and avoid duplicating existing tasks.
{RESEARCH_GUIDANCE if research else ''}
The task object must have:
- title: (string)
- description: (string)
- details: (string - implementation details)
- testStrategy: (string - validation approach)
- dependencies: List[int] (numbers of existing tasks that must be finished first; only numbers lower than {new_id})

{JSON_ONLY}
"""
    existing_lines = "\n".join(f"- {t.id}: {truncate(t.title, 80)} [{t.status}]" for t in existing) or "(none)"
    hints = "".join(
        f"\n- Suggested {label}: {params[key]}"
        for key, label in (("title", "title"), ("description", "description"), ("details", "details"), ("test_strategy", "test strategy"))
        if params.get(key)
    )
    requested = params.get("dependencies") or []
    user_prompt = f"""Create task {new_id} from this description:
{params['prompt']}
{hints}
Requested dependencies: {requested or 'none'}
Priority: {params.get('priority', 'medium')}

Existing tasks:
{existing_lines}
{_context_block(params)}
Return the new task as a single JSON object."""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


# --- scope-adjust ---
SCOPE_STRENGTHS = {
    "light": "Make a small, targeted adjustment. Keep the task recognisably the same.",
    "regular": "Make a moderate adjustment that clearly changes the amount of work.",
    "heavy": "Make a substantial adjustment to the amount of work and the approach.",
}
SCOPE_DIRECTIONS = {
    "up": "Increase the scope and complexity of the task: cover more edge cases, add robustness and extend functionality.",
    "down": "Reduce the scope and complexity of the task: keep the core goal, simplify the approach and drop non-essential requirements. List what was dropped in removedRequirements.",
}

def _scope_adjust(params: Dict[str, Any], research: bool) -> PromptPair:
    task: Task = params["task"]
    direction = params["direction"]
    strength = params["strength"]
    system_prompt = f"""You are an AI assistant that adjusts the scope of software development tasks.
{SCOPE_DIRECTIONS[direction]}
Strength "{strength}": {SCOPE_STRENGTHS[strength]}
{RESEARCH_GUIDANCE if research else ''}
Return an object with:
- title, description, details, testStrategy: (strings) the rewritten task
- scopeChanges: List[str] (the specific changes you made)
- removedRequirements: List[str] (requirements dropped or simplified; empty when scoping up)
- complexityChange: (integer 1-5) how much the complexity moved
- reasoning: (string) why these changes were made

{JSON_ONLY}
"""
    user_prompt = f"""Adjust the scope of this task ({direction}, {strength}):
```json
{json.dumps(task.model_dump(mode='json', include={'id', 'title', 'description', 'details', 'testStrategy', 'priority', 'status'}), indent=2)}
```
Additional instructions: {params.get('custom_prompt') or 'None'}
{_context_block(params)}"""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


# --- research ---
DETAIL_LEVELS = {
    "low": "Answer concisely in a few short paragraphs or bullet points.",
    "medium": "Give a focused answer with the key details, trade-offs and a short example where useful.",
    "high": "Give a comprehensive, in-depth answer covering alternatives, trade-offs, pitfalls and concrete examples.",
}

def _research(params: Dict[str, Any]) -> PromptPair:
    detail_level = params.get("detail_level", "medium")
    if detail_level not in DETAIL_LEVELS:
        raise ValidationError(f"Unknown detail level '{detail_level}'. Expected one of: {', '.join(DETAIL_LEVELS)}.")
    system_prompt = f"""You are a senior engineer researching a question for a software project.
Ground your answer in the project context provided when it is relevant. {DETAIL_LEVELS[detail_level]}"""
    user_prompt = f"""Research query: {params['query']}
{_context_block(params)}"""
    return PromptPair(systemPrompt=system_prompt, userPrompt=user_prompt)


TEMPLATES: Dict[str, Dict[str, PromptBuilder]] = {
    "parse-prd": {
        "default": lambda p: _parse_prd(p, research=False),
        "research": lambda p: _parse_prd(p, research=True),
    },
    "expand-task": {
        "default": lambda p: _expand_task(p, research=False),
        "research": lambda p: _expand_task(p, research=True),
    },
    "analyze-complexity": {
        "default": lambda p: _analyze_complexity(p, research=False),
        "research": lambda p: _analyze_complexity(p, research=True),
    },
    "update-task": {
        "default": lambda p: _update_task(p, research=False),
        "research": lambda p: _update_task(p, research=True),
        "append": _update_task_append,
    },
    "update-subtask": {
        "default": lambda p: _update_subtask(p, research=False),
        "research": lambda p: _update_subtask(p, research=True),
    },
    "add-task": {
        "default": lambda p: _add_task(p, research=False),
        "research": lambda p: _add_task(p, research=True),
    },
    "scope-adjust": {
        "default": lambda p: _scope_adjust(p, research=False),
        "research": lambda p: _scope_adjust(p, research=True),
    },
    "research": {
        "default": _research,
    },
}


class PromptManager:
    """Resolves a template name + variant + parameters into a system/user prompt pair."""

    def __init__(self, templates: Dict[str, Dict[str, PromptBuilder]] = TEMPLATES):
        self.templates = templates

    def load_prompt(self, name: str, params: Dict[str, Any], variant: str = "default") -> PromptPair:
        variants = self.templates.get(name)
        if variants is None:
            raise ValidationError(f"Unknown prompt template '{name}'.", operation="load_prompt")
        builder = variants.get(variant) or variants["default"]
        try:
            return builder(params)
        except KeyError as e:
            raise ValidationError(f"Prompt template '{name}' is missing parameter {e}.", operation="load_prompt")
