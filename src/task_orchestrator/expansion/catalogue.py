"""Deterministic subtask templates used when generation is unavailable."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class SubtaskTemplate:
    title: str
    description: str
    priority: str
    effort: int
    estimated_hours: float
    skills: tuple[str, ...] = field(default_factory=tuple)


FALLBACK_CATALOGUE: tuple[SubtaskTemplate, ...] = (
    SubtaskTemplate(
        title="Requirements Analysis and Planning",
        description=(
            "Analyze the requirements thoroughly, break down features into manageable components, "
            "and create a detailed plan with timelines and resource allocation."
        ),
        priority="high",
        effort=4,
        estimated_hours=32,
        skills=("analysis", "planning", "project-management"),
    ),
    SubtaskTemplate(
        title="System Architecture Design",
        description=(
            "Design the overall architecture, define component interactions, select the "
            "technology stack and write the technical specification."
        ),
        priority="high",
        effort=5,
        estimated_hours=48,
        skills=("architecture", "system-design", "technical-writing"),
    ),
    SubtaskTemplate(
        title="Core Feature Implementation",
        description="Implement the main features following the agreed architecture and coding guidelines.",
        priority="high",
        effort=4,
        estimated_hours=80,
        skills=("development", "programming", "testing"),
    ),
    SubtaskTemplate(
        title="User Interface Development",
        description="Build the user-facing interfaces required by the feature with attention to UX.",
        priority="medium",
        effort=3,
        estimated_hours=56,
        skills=("frontend", "ui-design", "ux-design"),
    ),
    SubtaskTemplate(
        title="Data Management Implementation",
        description=(
            "Set up data storage, implement data models and the APIs for data operations, "
            "and protect data integrity."
        ),
        priority="high",
        effort=4,
        estimated_hours=64,
        skills=("backend", "database", "api-development"),
    ),
    SubtaskTemplate(
        title="Integration and Testing",
        description="Integrate all components and run unit, integration and acceptance testing.",
        priority="medium",
        effort=3,
        estimated_hours=40,
        skills=("testing", "integration", "qa"),
    ),
    SubtaskTemplate(
        title="Security Implementation",
        description="Implement authentication, authorization and the security controls the feature needs.",
        priority="high",
        effort=4,
        estimated_hours=32,
        skills=("security", "authentication", "compliance"),
    ),
    SubtaskTemplate(
        title="Performance Optimization",
        description="Profile the system, add caching where it pays off and verify scalability targets.",
        priority="medium",
        effort=3,
        estimated_hours=24,
        skills=("performance", "optimization", "scalability"),
    ),
    SubtaskTemplate(
        title="Documentation and Training",
        description="Write user and developer documentation and prepare hand-over material.",
        priority="low",
        effort=2,
        estimated_hours=24,
        skills=("documentation", "training", "technical-writing"),
    ),
    SubtaskTemplate(
        title="Deployment and Monitoring",
        description="Set up the deployment pipeline, monitoring and logging, and the maintenance runbook.",
        priority="medium",
        effort=3,
        estimated_hours=32,
        skills=("devops", "monitoring", "deployment"),
    ),
)

FALLBACK_ACCEPTANCE_CRITERIA: tuple[str, ...] = (
    "Requirements are clearly defined and documented",
    "Implementation follows established standards",
    "Testing is completed with passing results",
    "Code review is completed and approved",
)


def fallback_descriptors(count: int) -> list[dict]:
    """Return exactly *count* descriptors, cycling through the catalogue.

    Entries past the end of the catalogue are marked as follow-up work so
    titles stay unique.
    """
    out: list[dict] = []
    size = len(FALLBACK_CATALOGUE)
    for i in range(max(count, 0)):
        template = FALLBACK_CATALOGUE[i % size]
        title = template.title
        description = template.description
        if i >= size:
            title = f"Additional {template.title}" if i < 2 * size else f"Additional {template.title} ({i // size + 1})"
            description = f"Extended work: {template.description[0].lower()}{template.description[1:]}"
        out.append(
            {
                "title": title,
                "description": description,
                "priority": template.priority,
                "effort": template.effort,
                "estimatedHours": float(template.estimated_hours),
                "tags": list(template.skills),
                "acceptanceCriteria": list(FALLBACK_ACCEPTANCE_CRITERIA),
            }
        )
    return out
