"""
Tests for workflow templates and job generation.
"""

import pytest

from fptracker.core.database import Job, StructuralElement
from fptracker.core.ingestion.errors import RowValidationError, UnknownWorkflowError
from fptracker.core.ingestion.workflows import (
    JOB_TEMPLATES,
    build_jobs,
    create_fire_proofing_jobs,
    get_available_workflows,
    get_fire_proofing_type,
    is_valid_workflow,
)
from sqlalchemy import select


class TestTemplates:
    """Test the workflow catalogue."""

    def test_template_lengths(self):
        assert len(JOB_TEMPLATES["cement_fire_proofing"]) == 7
        assert len(JOB_TEMPLATES["gypsum_fire_proofing"]) == 7
        assert len(JOB_TEMPLATES["intumescent_coatings"]) == 9
        assert len(JOB_TEMPLATES["refinery_fire_proofing"]) == 12

    def test_available_workflows(self):
        assert set(get_available_workflows()) == {
            "cement_fire_proofing",
            "gypsum_fire_proofing",
            "intumescent_coatings",
            "refinery_fire_proofing",
        }

    def test_fire_proofing_type_labels(self):
        assert get_fire_proofing_type("cement_fire_proofing") == "Cement"
        assert get_fire_proofing_type("intumescent_coatings") == "Intumescent"
        assert get_fire_proofing_type("something_else") == "Other"
        assert get_fire_proofing_type(None) == "Other"

    def test_is_valid_workflow(self):
        assert is_valid_workflow("gypsum_fire_proofing")
        assert not is_valid_workflow("")
        assert not is_valid_workflow(None)
        assert not is_valid_workflow("spray_paint")


class TestBuildJobs:
    """Test in-memory job generation."""

    def _element(self, workflow):
        return StructuralElement(structure_number="C-101", fire_proofing_workflow=workflow)

    @pytest.mark.parametrize("workflow", list(JOB_TEMPLATES))
    def test_order_keys_are_hundred_times_position(self, workflow):
        jobs = build_jobs(self._element(workflow))

        keys = [job.order_index for job in jobs]
        assert keys == [100 * position for position in range(1, len(JOB_TEMPLATES[workflow]) + 1)]
        assert keys == sorted(set(keys))

    def test_job_fields(self):
        jobs = build_jobs(self._element("cement_fire_proofing"))

        assert [job.job_title for job in jobs] == JOB_TEMPLATES["cement_fire_proofing"]
        assert jobs[0].job_description == "Surface Preparation for C-101"
        assert all(job.job_type == "cement_fire_proofing" for job in jobs)
        assert all(job.fire_proofing_type == "Cement" for job in jobs)
        assert all(job.status == "pending" for job in jobs)

    def test_no_workflow_yields_no_jobs(self):
        assert build_jobs(self._element(None)) == []
        assert build_jobs(self._element("")) == []

    def test_unknown_workflow_raises_validation_error(self):
        with pytest.raises(UnknownWorkflowError) as exc_info:
            build_jobs(self._element("spray_paint"))

        assert isinstance(exc_info.value, RowValidationError)
        assert "spray_paint" in str(exc_info.value)


class TestCreateFireProofingJobs:
    """Test persisted job generation."""

    @pytest.mark.asyncio
    async def test_jobs_persisted_with_element_ownership(self, session_factory, sub_project):
        async with session_factory() as db:
            element = StructuralElement(
                project_id=sub_project.project_id,
                sub_project_id=sub_project.id,
                structure_number="C-7",
                fire_proofing_workflow="intumescent_coatings",
            )
            db.add(element)
            await db.flush()

            created = await create_fire_proofing_jobs(db, element)
            await db.commit()

        async with session_factory() as db:
            result = await db.execute(
                select(Job).where(Job.structural_element_id == element.id).order_by(Job.order_index)
            )
            jobs = list(result.scalars().all())

        assert len(created) == len(jobs) == 9
        assert [job.order_index for job in jobs] == list(range(100, 1000, 100))
        assert all(job.project_id == sub_project.project_id for job in jobs)
        assert all(job.sub_project_id == sub_project.id for job in jobs)
