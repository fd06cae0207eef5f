from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.domain.capabilities import OutputType
from lexybrain.domain.schemas import SCHEMA_DESCRIPTIONS
from lexybrain.persistence.repos import plans as plans_repo


logger = logging.getLogger(__name__)

GLOBAL_PROMPT_KEY = "lexybrain_system"
MAX_PROMPT_KEYWORDS = 50

BASE_SYSTEM_INSTRUCTIONS = """You are LexyBrain, an AI market intelligence system for Etsy and marketplace sellers.

Your role is to analyze keyword data, market trends, and competition metrics to provide actionable insights for online sellers.

CRITICAL RULES:
1. Return ONLY valid JSON - no explanations, no markdown, no code fences
2. Follow the exact schema provided
3. Base recommendations on the provided data
4. Be concise and actionable
5. All numeric scores must be within specified ranges"""

RETRY_INSTRUCTIONS = (
    "IMPORTANT: The previous attempt failed validation. Ensure you return ONLY valid JSON "
    "with no additional text, markdown, or code fences. Follow the exact schema provided."
)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


@dataclass(frozen=True)
class PromptConfig:
    system_instructions: str = BASE_SYSTEM_INSTRUCTIONS
    constraints: dict[str, Any] = field(default_factory=dict)
    # Admin prompt rows may pin a different output type for a capability.
    output_type: OutputType | None = None

    def for_retry(self) -> "PromptConfig":
        # Same config with strict JSON instructions appended.
        return PromptConfig(
            system_instructions=f"{self.system_instructions}\n\n{RETRY_INSTRUCTIONS}",
            constraints=self.constraints,
            output_type=self.output_type,
        )


@dataclass(frozen=True)
class PromptRow:
    system_instructions: str
    constraints: dict[str, Any]


class PromptSource(Protocol):
    async def get_active(self, key: str) -> PromptRow | None:
        ...


class SqlPromptSource:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_active(self, key: str) -> PromptRow | None:
        # Active prompt row for the key, if any.
        async with self._session_factory() as session:
            row = await plans_repo.get_active_prompt(session, key)
        if row is None:
            return None
        return PromptRow(system_instructions=row.system_instructions or "", constraints=row.constraints or {})


async def load_prompt_config(source: PromptSource | None, prompt_key: str) -> PromptConfig:
    # Merge the global row with the capability row; missing rows fall back to defaults.
    if source is None:
        return PromptConfig()
    try:
        global_row = await source.get_active(GLOBAL_PROMPT_KEY)
        capability_row = await source.get_active(prompt_key)
    except SQLAlchemyError as exc:
        logger.warning("prompt_config_unavailable prompt_key=%s", prompt_key, exc_info=exc)
        return PromptConfig()

    blocks = [
        row.system_instructions.strip()
        for row in (global_row, capability_row)
        if row is not None and row.system_instructions and row.system_instructions.strip()
    ]
    raw_config = capability_row.constraints if capability_row and isinstance(capability_row.constraints, dict) else {}
    # Rows either nest limits under "constraints" or store them flat beside "output_type".
    if "constraints" in raw_config:
        constraints = raw_config["constraints"]
    else:
        constraints = {key: value for key, value in raw_config.items() if key != "output_type"}
    return PromptConfig(
        system_instructions="\n\n".join(blocks) if blocks else BASE_SYSTEM_INSTRUCTIONS,
        constraints=constraints if isinstance(constraints, dict) else {},
        output_type=_parse_output_type(raw_config.get("output_type")),
    )


def _parse_output_type(value: Any) -> OutputType | None:
    if not value:
        return None
    try:
        return OutputType(value)
    except ValueError:
        logger.warning("prompt_config_unknown_output_type value=%s", value)
        return None


def _constraint(constraints: dict[str, Any], name: str, cast: Callable[[Any], Any], default: Any) -> Any:
    # Admin-edited rows may carry junk; fall back to the default rather than failing the request.
    value = constraints.get(name)
    if not value:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning("prompt_config_invalid_constraint name=%s value=%s", name, value)
        return default


def build_prompt(output_type: OutputType, context: dict[str, Any], config: PromptConfig) -> str:
    # Assemble the fixed prompt sections in order.
    sections = [
        "=== SYSTEM INSTRUCTIONS ===",
        "",
        config.system_instructions or BASE_SYSTEM_INSTRUCTIONS,
        "",
        "=== TASK ===",
        "",
        task_instructions(output_type, config.constraints),
        "",
        "=== OUTPUT SCHEMA ===",
        "",
        SCHEMA_DESCRIPTIONS[output_type],
        "",
        "=== CONTEXT DATA ===",
        "",
        format_context(output_type, context),
        "",
        "=== OUTPUT ===",
        "",
        "Return ONLY the JSON object. No additional text.",
        "",
    ]
    return "\n".join(sections)


def task_instructions(output_type: OutputType, constraints: dict[str, Any]) -> str:
    # Task text per output type, shaped by admin constraints.
    max_opportunities = _constraint(constraints, "max_opportunities", int, 5)
    max_risks = _constraint(constraints, "max_risks", int, 3)
    max_actions = _constraint(constraints, "max_actions", int, 5)
    max_alerts = _constraint(constraints, "max_alerts", int, 5)
    max_items = _constraint(constraints, "max_items", int, 0)
    min_confidence = _constraint(constraints, "min_confidence", float, 0.0)

    if output_type == OutputType.MARKET_BRIEF:
        return (
            "Generate a comprehensive market brief for the provided niche.\n\n"
            "FOCUS AREAS:\n"
            f"- Identify {max_opportunities} top keyword opportunities with high potential\n"
            f"- Highlight {max_risks} key risks or challenges\n"
            f"- Provide {max_actions} specific actionable recommendations\n"
            f"- Assess overall market confidence ({min_confidence} to 1.0)\n\n"
            "ANALYSIS APPROACH:\n"
            "- High demand + low competition = strong opportunity\n"
            "- High trend momentum = growing market\n"
            "- High competition + declining trends = risk\n"
            "- Consider engagement scores for seller viability"
        )
    if output_type == OutputType.RADAR:
        lines = [
            "Analyze keywords and score each across 5 dimensions.",
            "",
            "SCORING DIMENSIONS:",
            "1. demand (0-1): How much search/buyer interest exists",
            "2. momentum (0-1): Is the trend growing or declining",
            "3. competition (0-1): Market saturation (LOWER is better)",
            "4. novelty (0-1): How unique/fresh is this opportunity",
            "5. profit (0-1): Estimated profit potential",
            "",
            "Use provided metrics (demand_index, competition_score, trend_momentum) and include a brief comment.",
        ]
        if max_items:
            lines.append(f"- Return up to {max_items} top opportunities")
        return "\n".join(lines)
    if output_type == OutputType.AD_INSIGHT:
        return (
            "Generate advertising budget recommendations.\n\n"
            "Allocate the provided budget across keywords to maximize ROI.\n"
            "- Keywords with high demand deserve more budget\n"
            "- Lower competition keywords typically have lower CPC\n"
            "- Estimate realistic CPC and expected daily clicks\n"
            "- Provide strategic notes"
        )
    return (
        "Identify market risks and challenges.\n\n"
        "FOCUS AREAS:\n"
        "- Oversaturated markets (high competition)\n"
        "- Declining trends (negative momentum)\n"
        "- Low engagement despite high competition\n"
        f"- Report up to {max_alerts} critical alerts\n\n"
        "SEVERITY ASSESSMENT:\n"
        "- high: Immediate action required, significant impact\n"
        "- medium: Monitor closely, moderate concern\n"
        "- low: Minor issue, awareness level"
    )


def format_context(output_type: OutputType, context: dict[str, Any]) -> str:
    # Render the context block; keywords are capped to keep prompts bounded.
    niche_terms = context.get("niche_terms") or []
    keywords = context.get("keywords") or []
    lines = [
        f"Market: {context.get('market') or 'global'}",
        f"Niche Terms: {', '.join(niche_terms) if niche_terms else 'General market analysis'}",
        "",
    ]
    if output_type == OutputType.AD_INSIGHT:
        budget_cents = int(context.get("budget_cents") or 0)
        lines.extend([f"Daily Budget: ${budget_cents / 100:.2f}", ""])

    lines.extend([f"Keywords ({len(keywords)} total):", ""])
    if not keywords:
        lines.append("No keyword data available.")
    else:
        lines.extend(["```json", json.dumps(keywords[:MAX_PROMPT_KEYWORDS], indent=2, default=str), "```"])
        if len(keywords) > MAX_PROMPT_KEYWORDS:
            lines.extend(["", f"Note: Showing top {MAX_PROMPT_KEYWORDS} of {len(keywords)} keywords."])

    metadata = context.get("metadata") or {}
    if metadata:
        lines.extend(["", "Additional Context:", "```json", json.dumps(metadata, indent=2, default=str), "```"])
    return "\n".join(lines)


def extract_json_from_output(output: str) -> str:
    # Models wrap JSON in fences or prose; recover the most plausible payload.
    fenced = _FENCE_RE.search(output)
    if fenced:
        candidate = fenced.group(1).strip()
        if candidate.startswith(("{", "[")) and _loads_or_none(candidate) is not None:
            return candidate

    best: str | None = None
    decoder = json.JSONDecoder()
    for index, char in enumerate(output):
        if char not in "{[":
            continue
        try:
            parsed, end = decoder.raw_decode(output, index)
        except ValueError:
            continue
        if isinstance(parsed, (dict, list)) and parsed:
            candidate = output[index:end]
            # Prefer the largest structure to skip echoed schema fragments.
            if best is None or len(candidate) > len(best):
                best = candidate
    if best is not None:
        return best

    start, end = output.find("{"), output.rfind("}")
    if start != -1 and end > start:
        return output[start : end + 1]
    start, end = output.find("["), output.rfind("]")
    if start != -1 and end > start:
        return output[start : end + 1]
    return output


def _loads_or_none(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None
