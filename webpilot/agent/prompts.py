"""
Prompt builders for the planner, the intent router and the script generator.
"""

import json
from typing import Any, Dict, List, Optional

from webpilot.models import LOOP_DETECTED_KIND, HistoryEntry, PageSnapshot, SessionContext

PLANNER_SYSTEM_PROMPT = (
    "You are a precise browser automation agent. Analyze the Accessibility Tree and move step-by-step."
)


def format_history(history: List[HistoryEntry]) -> str:
    """Render the action history the way the planner reads it."""
    if not history:
        return "(No actions yet)"

    lines = []
    failed = []
    for i, entry in enumerate(history, 1):
        if entry.compressed_count:
            lines.append(f"  {entry.thought}")
            continue
        if entry.kind == LOOP_DETECTED_KIND:
            lines.append(f"step {i}: ⚠️ SYSTEM: Loop detected. Try a different approach.")
            continue
        if entry.system or entry.action is None:
            lines.append(f"step {i}: SYSTEM: {entry.note or entry.thought}")
            continue

        action = entry.action
        label = action.description or f"{action.kind} {action.target or ''}".strip()
        status = "✓" if entry.success else "✗ FAILED"
        line = f"step {i}: {label} -> {status}"
        if entry.state_change:
            line += f" [{entry.state_change}]"
        if entry.error:
            line += f" ({entry.error})"
        lines.append(line)
        if entry.success is False:
            failed.append(label)

    text = "\n".join(lines)
    if failed:
        text += "\n\n⚠️ WARNING: The following actions FAILED - do NOT repeat them:\n"
        text += "\n".join(f"  - {f}" for f in failed[-3:])
        text += "\nTry a DIFFERENT approach!"
    return text


def _format_memory(user_memory: Optional[Dict[str, Any]]) -> str:
    if not user_memory:
        return "(none)"
    return "\n".join(f"- {k}: use {{{{memory.{k}}}}}" for k in sorted(user_memory))


def build_planner_prompt(
    goal: str,
    snapshot: PageSnapshot,
    history: List[HistoryEntry],
    context: SessionContext,
    user_memory: Optional[Dict[str, Any]] = None,
) -> str:
    goal_stack = context.goal_stack
    current = goal_stack[-1] if goal_stack else goal
    if goal_stack:
        goal_context = "Goal Stack:\n" + "\n".join(f"{i}. {g}" for i, g in enumerate(goal_stack, 1))
        goal_context += f'\nCurrent Focus: "{current}"'
    else:
        goal_context = f'Main Goal: "{goal}"'

    milestones = (
        "\n".join(f"✅ {m.label} (step {m.step_index})" for m in context.milestones)
        if context.milestones
        else "(No milestones yet)"
    )
    observations = (
        "\n".join(f"- {o.text[:200]}" for o in context.observations) if context.observations else "(none)"
    )

    page_header = f"Page: {snapshot.title or 'Untitled'}\nURL: {snapshot.url or 'unknown'}"
    if snapshot.restricted:
        page_body = snapshot.text
    else:
        page_body = (
            "Pseudo-HTML representation of the current page structure.\n"
            "Interactive elements have 'ai-id'. USE THIS ID FOR ACTIONS.\n"
            f"<snapshot>\n{snapshot.dom_tree or 'No DOM data available'}\n</snapshot>\n\n"
            f"Visible text (truncated):\n{snapshot.text[:800] or 'No visible text'}"
        )

    return f"""# Browser Automation Agent

## User Goal
"{goal}"

## Completed Milestones
{milestones}

## Cognitive State
{goal_context}

## Recent Observations
{observations}

## User Memory (placeholders you may use in fill values)
{_format_memory(user_memory)}

## Page Snapshot
{page_header}
{page_body}

## Action History
{format_history(history)}

## ⚠️ Critical Rules
1. **If you see [PAGE_SAME]**: Your action did NOT change the page. Try a different target or approach.
2. **If you see SYSTEM: Loop detected**: You are in a loop. You MUST choose a completely different strategy.
3. **If you see [PAGE_CHANGED]**: Your action worked. Proceed with the next step.

## Instructions
1. **Analyze**: Understand the page structure and your current goal.
2. **Goal Management**:
   - If the current sub-goal is finished, pop it.
   - If the main goal requires multiple steps, push new sub-goals.
3. **Decide Action**: Choose the SINGLE next logical step.
   - Use 'ai-id' from the snapshot as target.
   - If waiting is needed (e.g. after click), use "wait" with milliseconds as value.
   - If the task is better solved by a reusable page script, use "create_script".

## 🎯 Semantic Matching Guide (CRITICAL)
1. **READ the 'visual_label' attribute** - it shows the text associated with each input field.
2. **MATCH keywords** from the user's goal to the 'visual_label', NOT the first input.
3. **'visual_hint="highlighted-blue"'** marks a visually highlighted field.
4. **Use 'placeholder'** as a secondary hint if no visual_label matches.

## 🛑 VERIFICATION REQUIRED 🛑
- **NEVER** mark `goalCompleted: true` immediately after clicking an action button (Submit, Search, etc.).
- You **MUST** see the RESULT of the action (success message, new page content) first.
- `goalCompleted` means the USER'S INTENT is fully satisfied and verified.

## Output Format (JSON ONLY)
{{
  "thinking": "Brief analysis of current state -> reason for next action",
  "updatedGoalStack": ["Main Goal", "Sub Goal 1"],
  "goalCompleted": false,
  "nextAction": {{
    "action": "click" | "fill" | "navigate" | "scroll" | "wait" | "select" | "create_script",
    "target": "ai-id or URL",
    "value": "text to fill / option value / milliseconds",
    "description": "Short description for UI"
  }},
  "confidence": 0.0-1.0
}}
Note:
- 'updatedGoalStack' is the NEW state of the stack (top = last element).
- If 'goalCompleted' is true, 'nextAction' must be null.
"""


def build_intent_prompt(user_prompt: str) -> str:
    return f"""
User Prompt: "{user_prompt}"

Task: Classify if this is a "One-off Task" (better for an Agent to just do it) or a "Reusable Modification" (better for a Script).

Examples:
- "Click the login button" -> AGENT
- "Fill this form with my info" -> AGENT
- "Find the cheapest price on this page" -> AGENT
- "Always hide the sidebar" -> SCRIPT
- "Make the font bigger" -> SCRIPT
- "Auto-skip ads on this site" -> SCRIPT

Return ONLY a JSON object:
{{
  "intent": "AGENT" | "SCRIPT",
  "reason": "short explanation"
}}
"""


def build_script_prompt(
    url: str,
    title: str,
    text: str,
    user_prompt: str,
    existing_scripts: List[str],
    context_history: List[Dict[str, Any]],
    history: List[Dict[str, str]],
) -> str:
    previous = ""
    if context_history:
        previous = (
            "PREVIOUS AGENT HISTORY (Use this to understand what to replicate):\n"
            + json.dumps(context_history, ensure_ascii=False)
            + "\n\nCURRENT SESSION:\n"
        )
    existing = "\n".join(existing_scripts) if existing_scripts else "(none)"
    turns = "\n".join(f"[{h['role']}]: {h['content']}" for h in history)

    return f"""
Context:
URL: {url}
Page Title: {title or "Unknown"}
Initial Text Snippet: {text[:500]}...
Existing scripts:
{existing}

Task: Create a Tampermonkey-style Javascript script to: "{user_prompt}"

Tools Available:
- SEARCH_TEXT(query): Find elements containing text. Returns list with classes/IDs.
- INSPECT_SELECTOR(selector): Get details (HTML/parent) of a specific selector.
- FINISH(code, explanation): Submit the final script.

History:
{previous}{turns}

Instructions:
1. If you don't know the exact class name for the elements, use SEARCH_TEXT first!
2. Inspect candidates to verify structure before writing code.
3. Return ONLY a JSON object:
{{
    "tool": "SEARCH_TEXT" | "INSPECT_SELECTOR" | "FINISH",
    "arg": "search_query_or_selector",
    "code": "final_code_if_finish",
    "explanation": "thought_process"
}}
"""


def build_force_finish_prompt(history: List[Dict[str, str]]) -> str:
    turns = "\n".join(f"[{h['role']}]: {h['content']}" for h in history)
    return f"""
You have run out of turns.
Based on the history above, generate the BEST POSSIBLE script now.
Do not ask for more info.
Return ONLY JSON with "tool": "FINISH".

History:
{turns}
"""
