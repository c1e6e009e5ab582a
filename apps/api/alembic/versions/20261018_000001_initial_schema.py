"""create script versioning schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "script_versions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("scenes", sa.JSON(), nullable=False),
        sa.Column("full_script", sa.Text(), nullable=False),
        sa.Column("change_summary", sa.JSON(), nullable=True),
        sa.Column("provenance", sa.JSON(), nullable=True),
        sa.Column("diff", sa.JSON(), nullable=True),
        sa.Column("analysis_result", sa.JSON(), nullable=True),
        sa.Column("analysis_score", sa.Integer(), nullable=True),
        sa.Column("metrics", sa.JSON(), nullable=True),
        sa.Column("review", sa.JSON(), nullable=True),
        sa.Column("is_current", sa.Boolean(), nullable=False),
        sa.Column("is_candidate", sa.Boolean(), nullable=False),
        sa.Column("parent_version_id", sa.String(), nullable=True),
        sa.Column("base_version_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_version_id"], ["script_versions.id"]),
        sa.ForeignKeyConstraint(["base_version_id"], ["script_versions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "version_number", name="uq_script_versions_project_number"),
    )
    op.create_index(op.f("ix_script_versions_project_id"), "script_versions", ["project_id"], unique=False)
    op.create_index(
        "uq_script_versions_current",
        "script_versions",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("is_current = true"),
        sqlite_where=sa.text("is_current = 1"),
    )
    op.create_index(
        "uq_script_versions_candidate",
        "script_versions",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("is_candidate = true"),
        sqlite_where=sa.text("is_candidate = 1"),
    )

    op.create_table(
        "scene_recommendations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("script_version_id", sa.String(), nullable=False),
        sa.Column("scene_number", sa.Integer(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("area", sa.String(), nullable=False),
        sa.Column("current_text", sa.Text(), nullable=False),
        sa.Column("suggested_text", sa.Text(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=False),
        sa.Column("expected_impact", sa.String(), nullable=False),
        sa.Column("score_delta", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("source_agent", sa.String(), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["script_version_id"], ["script_versions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_scene_recommendations_script_version_id"),
        "scene_recommendations",
        ["script_version_id"],
        unique=False,
    )
    op.create_index(op.f("ix_scene_recommendations_scene_number"), "scene_recommendations", ["scene_number"], unique=False)

    op.create_table(
        "reanalysis_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("step", sa.String(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("can_retry", sa.Boolean(), nullable=False),
        sa.Column("candidate_version_id", sa.String(), nullable=True),
        sa.Column("base_version_id", sa.String(), nullable=True),
        sa.Column("request_json", sa.JSON(), nullable=True),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["candidate_version_id"], ["script_versions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["base_version_id"], ["script_versions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "idempotency_key", name="uq_reanalysis_jobs_idempotency"),
    )
    op.create_index(op.f("ix_reanalysis_jobs_project_id"), "reanalysis_jobs", ["project_id"], unique=False)
    op.create_index(op.f("ix_reanalysis_jobs_status"), "reanalysis_jobs", ["status"], unique=False)
    op.create_index(
        "uq_reanalysis_jobs_active",
        "reanalysis_jobs",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'running')"),
        sqlite_where=sa.text("status IN ('queued', 'running')"),
    )


def downgrade() -> None:
    op.drop_index("uq_reanalysis_jobs_active", table_name="reanalysis_jobs")
    op.drop_index(op.f("ix_reanalysis_jobs_status"), table_name="reanalysis_jobs")
    op.drop_index(op.f("ix_reanalysis_jobs_project_id"), table_name="reanalysis_jobs")
    op.drop_table("reanalysis_jobs")
    op.drop_index(op.f("ix_scene_recommendations_scene_number"), table_name="scene_recommendations")
    op.drop_index(op.f("ix_scene_recommendations_script_version_id"), table_name="scene_recommendations")
    op.drop_table("scene_recommendations")
    op.drop_index("uq_script_versions_candidate", table_name="script_versions")
    op.drop_index("uq_script_versions_current", table_name="script_versions")
    op.drop_index(op.f("ix_script_versions_project_id"), table_name="script_versions")
    op.drop_table("script_versions")
    op.drop_table("projects")
