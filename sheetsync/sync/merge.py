import logging

from googleapiclient.errors import HttpError

from sheetsync.errors import MergeError
from sheetsync.integrations.google_cloud import BigQueryClient, BigQueryJobError
from sheetsync.models.jobs import SyncStrategy

logger = logging.getLogger(__name__)


def build_merge_statement(staging_table: str, final_table: str, strategy: SyncStrategy) -> str:
    """One statement per strategy so BigQuery applies the whole merge or none of it."""
    if strategy == SyncStrategy.REPLACE:
        return f"CREATE OR REPLACE TABLE {final_table} AS SELECT * FROM {staging_table}"
    if strategy == SyncStrategy.APPEND:
        return f"INSERT INTO {final_table} SELECT * FROM {staging_table}"
    raise ValueError(f"unknown sync strategy: {strategy}")


def merge(
    warehouse: BigQueryClient,
    dataset_id: str,
    staging_table_id: str,
    final_table_id: str,
    strategy: SyncStrategy,
) -> None:
    statement = build_merge_statement(
        warehouse.table_path(dataset_id, staging_table_id),
        warehouse.table_path(dataset_id, final_table_id),
        strategy,
    )
    logger.info("merging %s.%s into %s.%s (%s)", dataset_id, staging_table_id, dataset_id, final_table_id, strategy.value)
    try:
        warehouse.run_query(statement)
    except BigQueryJobError as exc:
        raise MergeError(f"merge into {dataset_id}.{final_table_id} failed", detail=exc.detail) from exc
    except HttpError as exc:
        raise MergeError(f"merge into {dataset_id}.{final_table_id} failed", detail=str(exc)) from exc
