"""
Persistence for connected pages and their auto-pipelines.
"""

from crm_sync.db.helpers import (
    DatabaseError,
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from crm_sync.features.contact_sync.domain import PageConfig, Pipeline, PipelineStage
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.security.encryption import EncryptionError, decrypt_token

logger = get_logger(__name__)


class PageRepositoryError(DatabaseError):
    """More specific exception for page persistence failures."""


class PageRepository:
    """SQL access for facebook_pages, pipelines and pipeline_stages."""

    @classmethod
    @with_db_retry()
    async def load_page_config(cls, facebook_page_id: str) -> PageConfig | None:
        """
        Load a page with its decrypted access token and auto-pipeline.

        Raises:
            PageRepositoryError: If the stored token cannot be decrypted
        """
        row = await fetch_one(
            """
            SELECT id, page_id, organization_id, page_access_token,
                   instagram_account_id, auto_pipeline_id, auto_pipeline_mode
            FROM facebook_pages
            WHERE id = %s
            """,
            (facebook_page_id,),
        )
        if not row:
            return None

        try:
            access_token = decrypt_token(row["page_access_token"])
        except EncryptionError as e:
            raise PageRepositoryError(
                f"Page access token unreadable: {e}",
                operation="load_page_config",
                recoverable=False,
            ) from e

        pipeline = None
        if row.get("auto_pipeline_id"):
            pipeline = await cls.load_pipeline(str(row["auto_pipeline_id"]))

        return PageConfig(
            id=str(row["id"]),
            page_id=str(row["page_id"]),
            organization_id=str(row["organization_id"]),
            access_token=access_token,
            instagram_account_id=row.get("instagram_account_id"),
            auto_pipeline=pipeline,
            auto_pipeline_mode=row.get("auto_pipeline_mode") or "SKIP_EXISTING",
        )

    @classmethod
    async def load_pipeline(cls, pipeline_id: str) -> Pipeline | None:
        pipeline_row = await fetch_one(
            "SELECT id, name FROM pipelines WHERE id = %s", (pipeline_id,)
        )
        if not pipeline_row:
            logger.warning("Auto pipeline not found", pipeline_id=pipeline_id)
            return None

        stage_rows = await fetch_all(
            """
            SELECT id, name, type, "order", lead_score_min, lead_score_max, description
            FROM pipeline_stages
            WHERE pipeline_id = %s
            ORDER BY "order" ASC
            """,
            (pipeline_id,),
        )
        stages = [
            PipelineStage(
                id=str(r["id"]),
                name=r["name"],
                type=r["type"],
                order=r["order"],
                lead_score_min=r["lead_score_min"],
                lead_score_max=r["lead_score_max"],
                description=r.get("description"),
            )
            for r in stage_rows
        ]
        return Pipeline(id=str(pipeline_row["id"]), name=pipeline_row["name"], stages=stages)

    @classmethod
    async def page_belongs_to_org(cls, facebook_page_id: str, organization_id: str) -> bool:
        owner = await fetch_val(
            "SELECT organization_id FROM facebook_pages WHERE id = %s", (facebook_page_id,)
        )
        return owner is not None and str(owner) == str(organization_id)

    @classmethod
    async def update_stage_score_ranges(cls, ranges: list[tuple[str, int, int]]) -> None:
        """Write (stage_id, min, max) triples in one transaction."""
        if not ranges:
            return
        await execute_transaction(
            [
                (
                    "UPDATE pipeline_stages SET lead_score_min = %s, lead_score_max = %s WHERE id = %s",
                    (score_min, score_max, stage_id),
                )
                for stage_id, score_min, score_max in ranges
            ]
        )
        logger.info("Pipeline stage score ranges updated", stage_count=len(ranges))

    @classmethod
    async def touch_last_synced(cls, facebook_page_id: str) -> None:
        await execute_query(
            "UPDATE facebook_pages SET last_synced_at = NOW() WHERE id = %s",
            (facebook_page_id,),
        )
