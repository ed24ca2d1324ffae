"""Conflict identification from individual thoughts and mutual reflections."""

import logging

from council.models import Agent, Conflict, DialogueStage, Message, Reflection, StageData
from council.parsing import truncate

logger = logging.getLogger(__name__)

CONFLICT_TEMPLATES: dict[str, str] = {
    "conceptual_tensions": "Fundamental contradictions exist in the ideas themselves",
    "value_conflicts": "Underlying values or priorities are in tension",
    "idea_contradictions": "Core concepts present conflicting implications",
    "synthesis_opportunities": "New frameworks could accommodate these tensions",
    "framework_integration": "Create frameworks that honor idea complexity",
    "conceptual_resolution": "Resolve conceptual conflicts through synthesis",
    "idea_synthesis": "Synthesize ideas into coherent frameworks",
    "perspective_integration": "Integrate perspectives without forcing agreement",
    "core_insights": "Essential insights emerge from the discussion",
    "fundamental_questions": "Fundamental questions remain unanswered",
    "emerging_directions": "Clear path forward emerges from synthesis",
    "unresolved_tensions": "Tensions that need deeper examination",
    "synthesis_possibilities": "Possibilities for creating unified understanding",
    "multiple_perspectives": "Multiple perspectives enrich understanding",
    "no_significant_conflicts": (
        "Currently, there are no significant conflict possibilities, "
        "but integration of different approaches is needed."
    ),
    "complementary_solutions": (
        "Understanding these differences and exploring complementary solutions is important."
    ),
    "understanding_differences": (
        "To resolve this conflict, it is important to leverage the strengths "
        "of both approaches and find common ground."
    ),
}

# (reflecting style, target style) -> template key
ROOT_CAUSES: dict[tuple[str, str], str] = {
    ("analytical", "intuitive"): "conceptual_tensions",
    ("logical", "critical"): "value_conflicts",
    ("critical", "analytical"): "idea_contradictions",
}
RESOLUTIONS: dict[tuple[str, str], str] = {
    ("analytical", "intuitive"): "synthesis_opportunities",
    ("logical", "critical"): "framework_integration",
    ("critical", "analytical"): "conceptual_resolution",
}
_DEFAULT_ROOT_CAUSE = "conceptual_tensions"
_DEFAULT_RESOLUTION = "idea_synthesis"

STYLE_INSIGHTS: dict[str, str] = {
    "analytical": "core_insights",
    "logical": "fundamental_questions",
    "critical": "emerging_directions",
    "intuitive": "unresolved_tensions",
}
_DEFAULT_INSIGHT = "synthesis_possibilities"

_DEFAULT_STYLE = "logical"
_PREVIEW_CHARS = 100


def _stage_data(message: Message) -> StageData:
    data = message.metadata.get("stage_data")
    if isinstance(data, StageData):
        return data
    return StageData(agent_id=message.agent_id, content=message.content)


class ConflictIdentifier:
    """Derive Conflicts from the messages of one sequence.

    Never raises on malformed upstream data; it logs and returns no conflicts.
    """

    def __init__(self, agents: list[Agent]) -> None:
        self._styles = {a.id: a.style for a in agents}

    def style_of(self, agent_id: str) -> str:
        return self._styles.get(agent_id, _DEFAULT_STYLE)

    def identify_conflicts(self, messages: list[Message]) -> list[Conflict]:
        try:
            thoughts = {
                m.agent_id: _stage_data(m)
                for m in messages
                if m.role == "agent" and m.stage == DialogueStage.INDIVIDUAL_THOUGHT
            }
            reflections = [
                _stage_data(m)
                for m in messages
                if m.role == "agent" and m.stage == DialogueStage.MUTUAL_REFLECTION
            ]

            conflicts: list[Conflict] = []
            for data in reflections:
                for reflection in data.reflections:
                    if reflection.agreement:
                        continue
                    target = thoughts.get(reflection.target_agent_id)
                    conflicts.append(Conflict(
                        agents=[data.agent_id, reflection.target_agent_id],
                        description=self.describe_disagreement(data.agent_id, reflection, target),
                        severity="medium",
                    ))

            if not conflicts and len(thoughts) > 1:
                conflicts.append(Conflict(
                    agents=list(thoughts),
                    description=self.describe_diversity(list(thoughts.values())),
                    severity="low",
                ))
        except (AttributeError, TypeError, KeyError) as exc:
            logger.warning("Conflict identification skipped, malformed stage data: %s", exc)
            return []

        logger.info("Identified %d conflict(s)", len(conflicts))
        return conflicts

    def describe_disagreement(self, reflector_id: str, reflection: Reflection, target: StageData | None) -> str:
        target_id = reflection.target_agent_id
        pair = (self.style_of(reflector_id), self.style_of(target_id))
        approach = (target.approach if target else "") or self.style_of(target_id)
        preview = truncate(target.content, _PREVIEW_CHARS) if target else ""

        return "\n".join([
            "### Conflict Details",
            f"ID: {reflector_id} vs {target_id}",
            f"{reflector_id} disagrees with {target_id}'s perspective. "
            f"{target_id} used a {approach} approach and stated: \"{preview}\". "
            f"{reflector_id}'s reaction: \"{reflection.reaction}\".",
            "",
            "### Root Cause Analysis",
            CONFLICT_TEMPLATES[ROOT_CAUSES.get(pair, _DEFAULT_ROOT_CAUSE)],
            "",
            "### Resolution Direction",
            CONFLICT_TEMPLATES[RESOLUTIONS.get(pair, _DEFAULT_RESOLUTION)],
            "",
            "### Discussion Focus",
            CONFLICT_TEMPLATES["understanding_differences"],
        ])

    def describe_diversity(self, thoughts: list[StageData]) -> str:
        approaches = "; ".join(
            f"{t.agent_id}: {t.approach or self.style_of(t.agent_id)}" for t in thoughts
        )
        return "\n".join([
            "### Diverse Perspectives Integration Required",
            f"Agents: {', '.join(t.agent_id for t in thoughts)}",
            "",
            "### Agent Approaches",
            approaches,
            "",
            "### Approach Analysis",
            self.analyze_approach_differences(thoughts),
            "",
            "### Potential Conflicts",
            self.potential_conflicts(thoughts),
            "",
            "### Mutual Understanding",
            CONFLICT_TEMPLATES["complementary_solutions"],
        ])

    def analyze_approach_differences(self, thoughts: list[StageData]) -> str:
        styles = [self.style_of(t.agent_id) for t in thoughts]
        lines = []
        if len(set(styles)) > 1:
            lines.append(CONFLICT_TEMPLATES["perspective_integration"])
        for thought, style in zip(thoughts, styles):
            key = STYLE_INSIGHTS.get(style, _DEFAULT_INSIGHT)
            lines.append(f"{thought.agent_id} ({style}): {CONFLICT_TEMPLATES[key]}")
        return "\n".join(lines)

    def potential_conflicts(self, thoughts: list[StageData]) -> str:
        styles = {self.style_of(t.agent_id) for t in thoughts}
        approaches = {t.approach or self.style_of(t.agent_id) for t in thoughts}
        risks = []
        if {"analytical", "intuitive"} <= styles:
            risks.append(CONFLICT_TEMPLATES["conceptual_tensions"])
        if {"logical", "critical"} <= styles:
            risks.append(CONFLICT_TEMPLATES["value_conflicts"])
        if len(approaches) > 2:
            risks.append(CONFLICT_TEMPLATES["multiple_perspectives"])
        if not risks:
            return CONFLICT_TEMPLATES["no_significant_conflicts"]
        return "; ".join(risks) + ". " + CONFLICT_TEMPLATES["complementary_solutions"]


def format_conflicts(conflicts: list[Conflict]) -> str:
    if not conflicts:
        return "No conflicts identified."
    return "\n\n".join(
        f"[{c.severity}] {', '.join(c.agents)}\n{c.description}" for c in conflicts
    )
