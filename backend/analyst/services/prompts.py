"""Prompt templates for the AI planner.

Each template is filled with ``str.format``; literal JSON braces are doubled.
Every JSON-producing prompt states its response schema explicitly so replies
can be validated field by field.
"""
import json
from typing import Any, Dict, List, Optional

from analyst.core.sanitization import sanitize_for_prompt
from analyst.core.schemas import AnalysisCard, AnalysisPlan, ColumnProfile, Row

SYSTEM_PROMPT = (
    "You are an expert data analyst working inside a data analysis assistant. "
    "Respond with a single valid JSON object and nothing else unless told otherwise."
)

TEXT_SYSTEM_PROMPT = (
    "You are an expert data analyst. Write concise, concrete business prose. "
    "Never invent numbers that are not in the data you were given."
)


PREPARATION_PROMPT = """A user uploaded a dataset. Decide whether it needs cleaning or reshaping before analysis.

Common problems to fix:
- Title or metadata rows above the real header row
- Summary rows such as "Total" or "Subtotal" mixed into the data
- Numbers stored as text with currency symbols, percent signs or thousands separators
- Wide "crosstab" layouts where periods are columns and should become rows

COLUMNS:
{columns}

SAMPLE ROWS (first {sample_count}):
{rows}
{previous_error}
If the data is already clean, set "transform_code" to null.
Otherwise write the BODY of a Python function `def transform(data):` where `data` is a list of
row dicts. The body must build and `return` a new list of dicts. Only the builtins and the
`re`, `math` and `datetime` names are available; imports are not allowed.

Reply with JSON:
{{
  "explanation": "plain-language description of what you changed and why",
  "transform_code": "python function body or null",
  "output_columns": [{{"name": "column", "type": "numerical|categorical|date|time|currency|percentage"}}]
}}"""

PREVIOUS_ERROR_SECTION = """
On the previous attempt, your generated code failed with this error: "{error}"
Write different code that avoids this error.
"""


CANDIDATE_PLANS_PROMPT = """Propose up to {count} insightful charts for this dataset.

COLUMNS:
{columns}

SAMPLE ROWS:
{rows}

Rules:
- chart_type is one of bar, line, pie, doughnut, scatter
- Non-scatter charts need "group_by_column" and "aggregation" (sum, count or avg);
  "value_column" is required for sum and avg and optional for count
- Scatter charts need numerical "x_column" and "y_column" and no aggregation
- Use line charts for time-like groups, pie/doughnut only for a handful of categories
- Use only column names from the list above, spelled exactly

Reply with JSON:
{{
  "plans": [
    {{"chart_type": "bar", "title": "...", "description": "...", "aggregation": "sum",
      "group_by_column": "...", "value_column": "...", "x_column": null, "y_column": null}}
  ]
}}"""


REFINE_PLANS_PROMPT = """You are reviewing draft charts before they are shown to a user.
Each draft below includes its plan, how many groups it produced and its first result rows.

COLUMNS:
{columns}

DRAFTS:
{drafts}

Keep the charts that reveal something useful, drop near-duplicates and charts with a single group,
and fix titles that do not match the data. For charts with many categories (15 to 50), set
"default_top_n" to 8 and "default_hide_others" to true. Return at most {max_plans} plans.

Reply with JSON in the same plan format:
{{"plans": [ ... ]}}"""


CARD_SUMMARY_PROMPT = """Write a 2-3 sentence insight about this chart for a business user.
Reply in {language}.

CHART: {title}
DESCRIPTION: {description}
DATA ({row_count} rows, showing up to {shown}):
{rows}

Mention the most important pattern, extreme or trend with concrete numbers."""


CORE_BRIEFING_PROMPT = """You have just finished the first analysis of a dataset.
Reply in {language}.

COLUMNS:
{columns}

CHARTS AND THEIR SUMMARIES:
{cards}

Write a short briefing (4-6 sentences) for the user: what the dataset is about, the main findings,
and which questions would be worth asking next. This briefing is also kept as your own memory
for later conversation turns."""


PROACTIVE_INSIGHT_PROMPT = """Look at these charts and pick the single most surprising or important finding.

CHARTS:
{cards}

Reply with JSON:
{{"insight": "one or two sentences for the user", "card_id": "id of the chart it refers to"}}
If nothing stands out, reply with {{"insight": null, "card_id": null}}."""


FINAL_SUMMARY_PROMPT = """Write an executive summary of the whole analysis.
Reply in {language}.

CHARTS AND THEIR SUMMARIES:
{cards}

Use 3-5 sentences. Lead with the most important conclusion."""


CHAT_PROMPT = """You are the assistant of an interactive data analysis tool. The user sees a set of
analysis cards (charts) and can ask you to explain, create, change or filter them, or to edit the data.
Reply in {language}.

COLUMNS:
{columns}

DATA PREPARATION ALREADY APPLIED:
{preparation}

YOUR BRIEFING FROM THE INITIAL ANALYSIS:
{briefing}

CURRENT CARDS:
{cards}

SAMPLE OF THE CURRENT DATA:
{rows}

RAW SAMPLE AS UPLOADED (before preparation):
{raw_rows}

CONVERSATION SO FAR:
{history}

USER MESSAGE:
{message}

Answer with an ordered list of actions. Every action MUST have a non-empty "thought" that explains
the step. Available actions:
- {{"response_type": "text_response", "thought": "...", "text": "...", "card_id": "optional related card"}}
- {{"response_type": "plan_creation", "thought": "...", "plan": {{ same plan format as the cards }}}}
- {{"response_type": "dom_action", "thought": "...", "dom_action": {{"tool_name": "highlightCard|changeCardChartType|showCardData|filterCard", "args": {{"card_id": "...", "new_type": "bar", "visible": true, "column": "...", "values": ["..."]}}}}}}
- {{"response_type": "execute_code", "thought": "...", "code": {{"explanation": "...", "transform_code": "body of def transform(data): returning a new list of dicts"}}}}

Reply with JSON:
{{"actions": [ ... ]}}"""


def format_columns(columns: List[ColumnProfile]) -> str:
    lines = []
    for column in columns:
        name = sanitize_for_prompt(column.name, 100)
        if column.kind == "numerical" and column.value_range:
            low, high = column.value_range
            detail = f"numerical, range {low:g} to {high:g}"
        else:
            detail = f"categorical, {column.unique_count or 0} distinct values"
        if column.semantic_type and column.semantic_type != column.kind:
            detail += f", {column.semantic_type}"
        lines.append(f"- {name} ({detail}, {column.missing_percentage:.1f}% missing)")
    return "\n".join(lines) or "(no columns)"


def format_rows(rows: List[Row], limit: int = 20) -> str:
    text = json.dumps(rows[:limit], default=str, ensure_ascii=False, indent=None)
    return sanitize_for_prompt(text, 6000)


def format_plan(plan: AnalysisPlan) -> str:
    return json.dumps(plan.model_dump(exclude_none=True), ensure_ascii=False)


def format_cards(cards: List[AnalysisCard], rows_per_card: int = 10) -> str:
    if not cards:
        return "(no cards yet)"
    blocks = []
    for card in cards:
        blocks.append(
            f"- id: {card.id}\n"
            f"  title: {sanitize_for_prompt(card.plan.title, 200)}\n"
            f"  chart: {card.display_chart_type}\n"
            f"  plan: {format_plan(card.plan)}\n"
            f"  summary: {sanitize_for_prompt(card.ai_summary, 600)}\n"
            f"  data: {format_rows(card.aggregated_rows, rows_per_card)}"
        )
    return "\n".join(blocks)


def format_drafts(drafts: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"- plan: {format_plan(d['plan'])}\n  groups: {d['row_count']}\n  rows: {format_rows(d['rows'], 10)}"
        for d in drafts
    )


def format_history(messages: List[Any], limit: int = 12) -> str:
    lines = [
        f"{m.sender.upper()}: {sanitize_for_prompt(m.text, 800)}"
        for m in messages[-limit:]
    ]
    return "\n".join(lines) or "(no previous messages)"


def previous_error_section(last_error: Optional[str]) -> str:
    if not last_error:
        return ""
    return PREVIOUS_ERROR_SECTION.format(error=last_error)
