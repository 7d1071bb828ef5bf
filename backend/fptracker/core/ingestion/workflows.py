"""
Fire-proofing workflow templates and job generation.

Each workflow is a fixed ordered list of step titles. Generated jobs get
``order_index = position * ORDER_KEY_SPACING`` (1-based position), which
leaves 99 free integer keys between neighbouring steps for later manual
insertion (see ``order_keys``).
"""

import logging
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from fptracker.config import settings
from fptracker.core.database.models import Job, StructuralElement

from .errors import UnknownWorkflowError

logger = logging.getLogger("fptracker.ingestion.workflows")

ORDER_KEY_SPACING = settings.order_key_spacing

JOB_TEMPLATES: Dict[str, List[str]] = {
    "cement_fire_proofing": [
        "Surface Preparation",
        "Rockwool Filling",
        "Adhesive coat/Primer",
        "Vermiculite-Cement",
        "Thickness inspection",
        "Sealer coat",
        "WIR",
    ],
    "gypsum_fire_proofing": [
        "Surface Preparation",
        "Rockwool Filling",
        "Adhesive coat/Primer",
        "Vermiculite-Gypsum",
        "Thickness inspection",
        "Sealer coat",
        "WIR",
    ],
    "intumescent_coatings": [
        "Surface Preparation",
        "Primer",
        "Coat -1",
        "Coat-2",
        "Coat-3",
        "Coat-4",
        "Coat-5",
        "Thickness inspection",
        "Top Coat",
    ],
    "refinery_fire_proofing": [
        "Scaffolding Errection",
        "Surface Preparation",
        "Primer/Adhesive coat",
        "Mesh",
        "FP 1 Coat",
        "FP Finish coat",
        "Sealer",
        "Top coat Primer",
        "Top coat",
        "Sealant",
        "Inspection",
        "Scaffolding -Dismantling",
    ],
}

FIRE_PROOFING_TYPES: Dict[str, str] = {
    "cement_fire_proofing": "Cement",
    "gypsum_fire_proofing": "Gypsum",
    "intumescent_coatings": "Intumescent",
    "refinery_fire_proofing": "Refinery",
}


def get_fire_proofing_type(workflow: Optional[str]) -> str:
    return FIRE_PROOFING_TYPES.get(workflow or "", "Other")


def is_valid_workflow(workflow: Optional[str]) -> bool:
    return bool(workflow) and workflow in JOB_TEMPLATES


def get_available_workflows() -> List[str]:
    return list(JOB_TEMPLATES.keys())


def build_jobs(element: StructuralElement, created_by: Optional[UUID] = None) -> List[Job]:
    """
    Build (unsaved) jobs for an element's workflow.

    Returns an empty list when the element has no workflow selector.

    Raises:
        UnknownWorkflowError: If the selector matches no template
    """
    workflow = element.fire_proofing_workflow
    if not workflow:
        return []

    titles = JOB_TEMPLATES.get(workflow)
    if titles is None:
        raise UnknownWorkflowError(workflow)

    fire_proofing_type = get_fire_proofing_type(workflow)
    label = element.structure_number or "element"

    return [
        Job(
            structural_element_id=element.id,
            project_id=element.project_id,
            sub_project_id=element.sub_project_id,
            job_title=title,
            job_description=f"{title} for {label}",
            job_type=workflow,
            fire_proofing_type=fire_proofing_type,
            order_index=position * ORDER_KEY_SPACING,
            status="pending",
            created_by=created_by or element.created_by,
        )
        for position, title in enumerate(JOB_TEMPLATES[workflow], start=1)
    ]


async def create_fire_proofing_jobs(
    session: AsyncSession,
    element: StructuralElement,
    created_by: Optional[UUID] = None,
) -> List[Job]:
    """
    Persist the workflow jobs of an element inside the caller's transaction.

    The element must already be flushed so its id is assigned.
    """
    jobs = build_jobs(element, created_by)
    if not jobs:
        return []

    session.add_all(jobs)
    await session.flush()
    logger.debug(f"Created {len(jobs)} {element.fire_proofing_workflow} jobs for {element.structure_number}")
    return jobs
