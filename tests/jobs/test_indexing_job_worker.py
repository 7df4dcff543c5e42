"""Tests for the indexing job worker pipeline tasks."""

import contextlib
from decimal import Decimal
from unittest.mock import ANY, AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.clients.helius import HeliusClient
from src.indexing.errors import ExternalStoreError, NotFoundError
from src.indexing.job_service import IndexingJobService
from src.indexing.models import JobStatus
from src.indexing.sink_writer import SinkWriter
from src.jobs import indexing_job_worker
from src.jobs.indexing_job_worker import IndexingJobWorker, process_indexing_job
from src.jobs.models import InitialDataFetchMessage, ProcessWebhookEventMessage
from tests.mock_utils import (
    create_mock_db_pool,
    make_database_config,
    make_job,
    nft_bid_transaction,
)

SQS_METADATA = {"message_id": "msg-1", "receipt_handle": "rh-1", "approximate_receive_count": "1"}


def backfill_entry(mint: str, bidder: str, price: int = 10) -> dict:
    return {
        "collection": "mad_lads",
        "mint": mint,
        "price": price,
        "marketplace": "TENSOR",
        "bidder": bidder,
        "expiry": None,
    }


@pytest.fixture
def job_service():
    service = MagicMock(spec=IndexingJobService)
    service.get_job_for_processing.return_value = make_job(
        status=JobStatus.ACTIVE, database_config=make_database_config()
    )
    return service


@pytest.fixture
def helius_client():
    return MagicMock(spec=HeliusClient)


@pytest.fixture
def sink_writer():
    writer = MagicMock(spec=SinkWriter)
    writer.write.side_effect = lambda job, records: len(records)
    return writer


@pytest.fixture
def worker(job_service, helius_client, sink_writer):
    return IndexingJobWorker(
        sqs_client=MagicMock(),
        helius_client=helius_client,
        sink_writer=sink_writer,
        job_service=job_service,
        http_port=18080,
    )


class TestInitialDataFetch:
    @pytest.mark.asyncio
    async def test_empty_dataset_activates_without_connecting(
        self, worker, job_service, helius_client, sink_writer
    ):
        job_service.get_job_for_processing.return_value = make_job(status=JobStatus.PENDING)
        helius_client.fetch_initial_dataset.return_value = []

        outcome = await worker.process_initial_data_fetch(InitialDataFetchMessage(job_id="job-1"))

        assert outcome.status == "success"
        assert outcome.records_written == 0
        job_service.activate.assert_awaited_once_with("job-1")
        sink_writer.write.assert_not_called()
        job_service.record_statistics.assert_not_called()

    @pytest.mark.asyncio
    async def test_dataset_of_invalid_entries_counts_as_empty(
        self, worker, job_service, helius_client, sink_writer
    ):
        job_service.get_job_for_processing.return_value = make_job(status=JobStatus.PENDING)
        helius_client.fetch_initial_dataset.return_value = [{"mint": "m1"}]

        await worker.process_initial_data_fetch(InitialDataFetchMessage(job_id="job-1"))

        job_service.activate.assert_awaited_once_with("job-1")
        sink_writer.write.assert_not_called()

    @pytest.mark.asyncio
    async def test_backfill_writes_then_activates(
        self, worker, job_service, helius_client, sink_writer
    ):
        job = make_job(status=JobStatus.PENDING, database_config=make_database_config())
        job_service.get_job_for_processing.return_value = job
        helius_client.fetch_initial_dataset.return_value = [
            backfill_entry("m1", "b1"),
            backfill_entry("m2", "b2"),
        ]

        outcome = await worker.process_initial_data_fetch(InitialDataFetchMessage(job_id="job-1"))

        assert outcome.status == "success"
        assert outcome.records_written == 2
        written_job, records = sink_writer.write.await_args.args
        assert written_job is job
        assert [record.mint for record in records] == ["m1", "m2"]
        job_service.record_statistics.assert_awaited_once_with("job-1", 2, ANY)
        job_service.activate.assert_awaited_once_with("job-1")

    @pytest.mark.asyncio
    async def test_write_failure_is_recorded_on_job(
        self, worker, job_service, helius_client, sink_writer
    ):
        job_service.get_job_for_processing.return_value = make_job(
            status=JobStatus.PENDING, database_config=make_database_config()
        )
        helius_client.fetch_initial_dataset.return_value = [backfill_entry("m1", "b1")]
        sink_writer.write.side_effect = ExternalStoreError("Failed to connect to database")

        outcome = await worker.process_initial_data_fetch(InitialDataFetchMessage(job_id="job-1"))

        assert outcome.status == "failed"
        assert outcome.error_message == "Failed to connect to database"
        job_service.record_statistics.assert_awaited_once_with(
            "job-1", 0, ANY, error="Failed to connect to database"
        )
        job_service.activate.assert_not_called()

    @pytest.mark.asyncio
    async def test_redelivery_for_active_job_is_skipped(self, worker, job_service, helius_client):
        outcome = await worker.process_initial_data_fetch(InitialDataFetchMessage(job_id="job-1"))

        assert outcome.status == "skipped"
        helius_client.fetch_initial_dataset.assert_not_called()

    @pytest.mark.asyncio
    async def test_deleted_job_is_skipped(self, worker, job_service, helius_client):
        job_service.get_job_for_processing.side_effect = NotFoundError("Indexing job not found")

        outcome = await worker.process_initial_data_fetch(InitialDataFetchMessage(job_id="job-1"))

        assert outcome.status == "skipped"
        helius_client.fetch_initial_dataset.assert_not_called()


class TestWebhookEvent:
    @pytest.mark.asyncio
    async def test_records_are_written_and_counted(self, worker, job_service, sink_writer):
        message = ProcessWebhookEventMessage(
            job_id="job-1",
            payload=[nft_bid_transaction(mint="m1"), nft_bid_transaction(mint="m2")],
        )

        outcome = await worker.process_webhook_event(message)

        assert outcome.status == "success"
        assert outcome.records_written == 2
        job_service.record_statistics.assert_awaited_once_with("job-1", 2, ANY)
        job_service.activate.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [JobStatus.PAUSED, JobStatus.PENDING, JobStatus.ERROR])
    async def test_inactive_job_is_a_no_op(self, worker, job_service, sink_writer, status):
        job_service.get_job_for_processing.return_value = make_job(status=status)

        outcome = await worker.process_webhook_event(
            ProcessWebhookEventMessage(job_id="job-1", payload=[nft_bid_transaction()])
        )

        assert outcome.status == "skipped"
        sink_writer.write.assert_not_called()
        job_service.record_statistics.assert_not_called()

    @pytest.mark.asyncio
    async def test_filtered_payload_never_connects(self, worker, job_service, sink_writer):
        message = ProcessWebhookEventMessage(
            job_id="job-1", payload=[nft_bid_transaction(collection="okay_bears")]
        )

        outcome = await worker.process_webhook_event(message)

        assert outcome.status == "skipped"
        sink_writer.write.assert_not_called()
        job_service.record_statistics.assert_not_called()

    @pytest.mark.asyncio
    async def test_unsupported_type_is_recorded(self, worker, job_service, sink_writer):
        job_service.get_job_for_processing.return_value = make_job(type="nft_sales")

        outcome = await worker.process_webhook_event(
            ProcessWebhookEventMessage(job_id="job-1", payload=[nft_bid_transaction()])
        )

        assert outcome.status == "failed"
        job_service.record_statistics.assert_awaited_once_with(
            "job-1", 0, ANY, error="Unsupported indexing type: nft_sales"
        )

    @pytest.mark.asyncio
    async def test_job_deleted_while_processing(self, worker, job_service, sink_writer):
        sink_writer.write.side_effect = ExternalStoreError("relation does not exist")
        job_service.record_statistics.side_effect = NotFoundError("Indexing job not found")

        outcome = await worker.process_webhook_event(
            ProcessWebhookEventMessage(job_id="job-1", payload=[nft_bid_transaction()])
        )

        assert outcome.status == "failed"

    @pytest.mark.asyncio
    async def test_statistics_failure_propagates(self, worker, job_service):
        job_service.record_statistics.side_effect = ConnectionError("control db down")

        with pytest.raises(ConnectionError):
            await worker.process_webhook_event(
                ProcessWebhookEventMessage(job_id="job-1", payload=[nft_bid_transaction()])
            )


class TestOverlappingWebhookEvents:
    """Tasks for the same job write through a real SinkWriter into a mock sink connection."""

    @pytest.fixture
    def sink_conn(self):
        pool, conn = create_mock_db_pool()

        @contextlib.asynccontextmanager
        async def fake_open_sink_pool(db_config):
            yield pool

        with patch("src.indexing.sink_writer.open_sink_pool", fake_open_sink_pool):
            yield conn

    @pytest.fixture
    def writing_worker(self, job_service, helius_client):
        return IndexingJobWorker(
            sqs_client=MagicMock(),
            helius_client=helius_client,
            sink_writer=SinkWriter(),
            job_service=job_service,
            http_port=18080,
        )

    @staticmethod
    def stored_prices(conn) -> dict[tuple[str, str], Decimal]:
        """Replay every upserted batch in order, keyed by (mint, bidder)."""
        stored: dict[tuple[str, str], Decimal] = {}
        for call in conn.executemany.call_args_list:
            _, rows = call.args
            for row in rows:
                stored[(row[1], row[4])] = row[2]
        return stored

    @pytest.mark.asyncio
    async def test_last_task_wins_and_both_counts_are_recorded(
        self, writing_worker, job_service, sink_conn
    ):
        first = ProcessWebhookEventMessage(
            job_id="job-1",
            payload=[
                nft_bid_transaction(mint="m1", bidder="b1", amount=10),
                nft_bid_transaction(mint="m2", bidder="b1", amount=11),
            ],
        )
        second = ProcessWebhookEventMessage(
            job_id="job-1", payload=[nft_bid_transaction(mint="m1", bidder="b1", amount=30)]
        )

        await writing_worker.process_webhook_event(first)
        await writing_worker.process_webhook_event(second)

        assert [call.args for call in job_service.record_statistics.await_args_list] == [
            ("job-1", 2, ANY),
            ("job-1", 1, ANY),
        ]
        upsert_sql = {call.args[0] for call in sink_conn.executemany.call_args_list}
        assert len(upsert_sql) == 1
        assert 'ON CONFLICT ("mint", "bidder")' in upsert_sql.pop()
        assert self.stored_prices(sink_conn) == {
            ("m1", "b1"): Decimal("30"),
            ("m2", "b1"): Decimal("11"),
        }

    @pytest.mark.asyncio
    async def test_redelivered_batch_leaves_same_rows(self, writing_worker, job_service, sink_conn):
        message = ProcessWebhookEventMessage(
            job_id="job-1", payload=[nft_bid_transaction(mint="m1", bidder="b1", amount=10)]
        )

        await writing_worker.process_webhook_event(message)
        once = self.stored_prices(sink_conn)
        await writing_worker.process_webhook_event(message)

        assert self.stored_prices(sink_conn) == once == {("m1", "b1"): Decimal("10")}
        first_rows, second_rows = (
            call.args[1] for call in sink_conn.executemany.call_args_list
        )
        assert first_rows == second_rows


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_dispatches_by_message_type(self, worker, job_service, helius_client):
        job_service.get_job_for_processing.return_value = make_job(status=JobStatus.PENDING)
        helius_client.fetch_initial_dataset.return_value = []

        outcome = await worker.process_message(
            {"message_type": "initial-data-fetch", "job_id": "job-1"}
        )

        assert outcome.status == "success"
        job_service.activate.assert_awaited_once_with("job-1")

    @pytest.mark.asyncio
    async def test_process_indexing_job_records_completion(self, worker):
        with (
            patch.object(indexing_job_worker, "worker", worker),
            patch("src.jobs.indexing_job_worker.record_job_completion") as record_completion,
        ):
            await process_indexing_job(
                {
                    "message_type": "process-webhook-event",
                    "job_id": "job-1",
                    "payload": [nft_bid_transaction()],
                },
                SQS_METADATA,
            )

        _, job_type, status, fields = record_completion.call_args.args
        assert job_type == "Indexing"
        assert status == "success"
        assert fields["records_written"] == 1

    @pytest.mark.asyncio
    async def test_unknown_message_type_is_left_on_queue(self, worker):
        with (
            patch.object(indexing_job_worker, "worker", worker),
            patch("src.jobs.indexing_job_worker.record_job_completion") as record_completion,
        ):
            with pytest.raises(ValueError):
                await process_indexing_job(
                    {"message_type": "reindex", "job_id": "job-1"}, SQS_METADATA
                )

        assert record_completion.call_args.args[2] == "failed"

    @pytest.mark.asyncio
    async def test_missing_job_id(self, worker):
        with patch.object(indexing_job_worker, "worker", worker):
            with pytest.raises(ValueError, match="missing message_type or job_id"):
                await process_indexing_job({"message_type": "initial-data-fetch"}, SQS_METADATA)


class TestWorkerHealth:
    QUEUE_ARN = "arn:aws:sqs:us-east-1:123456789012:indexing-jobs.fifo"

    @pytest.fixture
    def health_conn(self, worker):
        pool, conn = create_mock_db_pool()
        conn.fetchval = AsyncMock(return_value=1)
        worker.health_db_manager = MagicMock()
        worker.health_db_manager.acquire_connection.return_value = pool.acquire.return_value
        worker.queue_arn = self.QUEUE_ARN
        worker.sqs_client.get_queue_attributes = AsyncMock(return_value={"QueueArn": self.QUEUE_ARN})
        return conn

    def test_liveness(self, worker):
        response = TestClient(worker._app).get("/health/live")

        assert response.status_code == 200
        assert response.json()["service"] == "IndexingJobWorker"

    def test_ready_when_control_db_and_queue_respond(self, worker, health_conn):
        response = TestClient(worker._app).get("/health/ready")

        assert response.status_code == 200
        assert response.json()["components"] == {"control_db": "healthy", "sqs": "healthy"}
        worker.sqs_client.get_queue_attributes.assert_awaited_once_with(self.QUEUE_ARN)

    def test_not_ready_when_control_db_is_down(self, worker, health_conn):
        health_conn.fetchval.side_effect = ConnectionRefusedError("connection refused")

        response = TestClient(worker._app).get("/health/ready")

        assert response.status_code == 503
        components = response.json()["detail"]["components"]
        assert components["control_db"] == "unhealthy: connection refused"
        assert components["sqs"] == "healthy"

    def test_not_ready_when_queue_is_unreachable(self, worker, health_conn):
        worker.sqs_client.get_queue_attributes.return_value = None

        response = TestClient(worker._app).get("/health/ready")

        assert response.status_code == 503
        assert response.json()["detail"]["components"]["sqs"] == "unhealthy: no queue attributes"
