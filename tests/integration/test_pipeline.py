"""
Integration tests for the expense pipeline.

Runs whole batches through extraction, categorization, estimation and
persistence with scripted providers and a temporary store.
"""

import asyncio
import json
from unittest.mock import patch

import pytest

from greenlens.errors import ProviderError, UnsupportedFileError
from greenlens.models import Category, Confidence
from greenlens.pipeline import (
    ExpensePipeline,
    FileQueue,
    FileStatus,
    InputFile,
    PipelineSession,
    PipelineState,
    main,
)
from greenlens.providers import ProviderChain


def csv_file(name, text):
    return InputFile(name=name, content=text.encode("utf-8"), content_type="text/csv")


@pytest.fixture
def pipeline(analysis_store):
    return ExpensePipeline(store=analysis_store)


# =============================================================================
# FILE QUEUE
# =============================================================================

class TestFileQueue:
    """Tests for queueing uploaded files."""

    def test_rejects_unsupported_extension(self):
        queue = FileQueue()

        with pytest.raises(UnsupportedFileError, match='"notes.txt" is not supported'):
            queue.add(InputFile("notes.txt", b"hello"))
        assert len(queue) == 0

    def test_extension_is_case_insensitive(self):
        queue = FileQueue()
        file = InputFile("RECEIPT.JPG", b"\xff\xd8")

        assert queue.add(file) is True
        assert file.media_type == "image/jpeg"

    def test_deduplicates_by_name_and_size(self):
        queue = FileQueue()

        assert queue.add(InputFile("a.csv", b"1234")) is True
        assert queue.add(InputFile("a.csv", b"5678")) is False
        assert queue.add(InputFile("a.csv", b"12345")) is True
        assert len(queue) == 2

    def test_add_many_collects_rejections(self):
        queue = FileQueue()
        rejected = queue.add_many([
            InputFile("a.csv", b"x"),
            InputFile("b.docx", b"x"),
            InputFile("c.webp", b"x"),
        ])

        assert [f.name for f in queue] == ["a.csv", "c.webp"]
        assert len(rejected) == 1
        assert "b.docx" in rejected[0]

    def test_remove_and_clear(self):
        queue = FileQueue()
        queue.add_many([InputFile("a.csv", b"x"), InputFile("b.pdf", b"x")])

        queue.remove(0)
        assert [f.name for f in queue] == ["b.pdf"]
        queue.clear()
        assert len(queue) == 0

    def test_from_path(self, tmp_path):
        path = tmp_path / "expenses.csv"
        path.write_bytes(b"vendor,amount\nA,1")

        file = InputFile.from_path(str(path))

        assert file.name == "expenses.csv"
        assert file.size == len(b"vendor,amount\nA,1")


# =============================================================================
# END-TO-END RUNS
# =============================================================================

class TestPipelineRun:
    """Tests for ExpensePipeline.run."""

    @pytest.mark.asyncio
    async def test_keyword_categorized_csv(self, pipeline, analysis_store):
        """A utility bill is categorized by keyword and persisted."""
        session = PipelineSession([csv_file("bills.csv", 'vendor,amount\n"PG&E Electric",120.00')])

        outcome = await pipeline.run(session)

        assert outcome.ok
        assert outcome.state == PipelineState.PERSISTED
        row = outcome.result.rows[0]
        assert (row.category, row.confidence, row.co2kg) == (Category.ENERGY, Confidence.RULE, 27.96)
        assert outcome.result.summary[Category.ENERGY].co2 == 27.96
        assert outcome.result.total_co2 == 27.96

        stored = await analysis_store.load()
        assert stored.rows == outcome.result.rows

    @pytest.mark.asyncio
    async def test_unknown_vendor_rules_only(self, pipeline):
        session = PipelineSession([csv_file("misc.csv", 'description,cost\n"Mystery Corp",50.00')], rules_only=True)

        outcome = await pipeline.run(session)

        row = outcome.result.rows[0]
        assert (row.category, row.confidence, row.co2kg) == (Category.OTHER, Confidence.LOW, 6.0)
        assert outcome.classification_error is None

    @pytest.mark.asyncio
    async def test_unknown_vendor_without_providers(self, pipeline):
        outcome = await pipeline.run(PipelineSession([csv_file("misc.csv", "vendor,amount\nMystery Corp,50")]))

        assert outcome.result.rows[0].category == Category.OTHER
        assert outcome.retry_rules_only is False

    @pytest.mark.asyncio
    async def test_one_bad_file_does_not_stop_the_batch(self, pipeline):
        statuses = []
        session = PipelineSession(
            [
                csv_file("expenses.csv", "vendor,amount\nStaples,10\nUber,20\nRecology,30\n,\n"),
                InputFile("broken.pdf", b"this is not a pdf"),
            ],
            on_status=lambda index, file, state: statuses.append((file.name, state.status)),
        )

        outcome = await pipeline.run(session)

        assert [r.vendor for r in outcome.result.rows] == ["Staples", "Uber", "Recology"]
        assert [r.category for r in outcome.result.rows] == [Category.SUPPLY, Category.TRANSPORT, Category.WASTE]
        assert outcome.file_states[0].status == FileStatus.DONE
        assert outcome.file_states[0].record_count == 3
        assert outcome.file_states[1].status == FileStatus.ERROR
        assert "Could not read PDF" in outcome.file_states[1].message
        assert statuses == [
            ("expenses.csv", FileStatus.PARSING),
            ("expenses.csv", FileStatus.DONE),
            ("broken.pdf", FileStatus.PARSING),
            ("broken.pdf", FileStatus.ERROR),
        ]

    @pytest.mark.asyncio
    async def test_no_data_is_an_error_outcome(self, pipeline, analysis_store):
        outcome = await pipeline.run(PipelineSession([InputFile("broken.pdf", b"this is not a pdf")]))

        assert not outcome.ok
        assert outcome.state == PipelineState.ERRORED
        assert outcome.error.startswith("No valid expense data could be extracted from the uploaded files.")
        assert "Error: Could not read PDF" in outcome.error
        assert await analysis_store.load() is None

    @pytest.mark.asyncio
    async def test_unsupported_file_in_session(self, pipeline):
        outcome = await pipeline.run(PipelineSession([InputFile("notes.txt", b"hello")]))

        assert outcome.file_states[0].status == FileStatus.ERROR
        assert '"notes.txt" is not supported' in outcome.file_states[0].message

    @pytest.mark.asyncio
    async def test_failed_classification_offers_rules_only_retry(self, make_client, analysis_store):
        client = make_client(error=ProviderError("Claude", "overloaded", 529))
        pipeline = ExpensePipeline(providers=ProviderChain(client), store=analysis_store)
        files = [csv_file("mixed.csv", "vendor,amount\nMystery Corp,50\nPG&E,100")]

        outcome = await pipeline.run(PipelineSession(files))

        assert outcome.ok
        assert outcome.retry_rules_only is True
        assert outcome.classification_error.startswith("AI categorization failed:")
        mystery, pge = outcome.result.rows
        assert (mystery.category, mystery.confidence) == (Category.OTHER, Confidence.LOW)
        assert (pge.category, pge.confidence) == (Category.ENERGY, Confidence.RULE)

        retry = await pipeline.run(PipelineSession(files, rules_only=True))

        assert retry.classification_error is None
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_records_keep_source_order(self, make_client, analysis_store):
        response = json.dumps([
            {"index": 1, "category": "supply", "confidence": "high"},
            {"index": 2, "category": "waste", "confidence": "medium"},
        ])
        client = make_client(responses=[response])
        pipeline = ExpensePipeline(providers=ProviderChain(client), store=analysis_store)

        outcome = await pipeline.run(PipelineSession([
            csv_file("one.csv", "vendor,amount\nMystery Corp,50\nPG&E,100"),
            csv_file("two.csv", "vendor,amount\nGlobex,25"),
        ]))

        assert [(r.vendor, r.category) for r in outcome.result.rows] == [
            ("Mystery Corp", Category.SUPPLY),
            ("PG&E", Category.ENERGY),
            ("Globex", Category.WASTE),
        ]
        prompt = client.requests[0].prompt
        assert '1. Vendor: "Mystery Corp"' in prompt
        assert '2. Vendor: "Globex"' in prompt
        assert "PG&E" not in prompt

    @pytest.mark.asyncio
    async def test_provider_categories_are_kept(self, make_client, analysis_store):
        response = json.dumps([
            {"vendor": "Shell", "description": "Office paper", "amount": 25, "category": "supply", "confidence": "high"},
            {"vendor": "Shell", "description": "Fuel", "amount": 40},
        ])
        client = make_client(responses=[response])
        pipeline = ExpensePipeline(providers=ProviderChain(client), store=analysis_store)

        outcome = await pipeline.run(PipelineSession([InputFile("receipt.png", b"\x89PNG fake", "image/png")]))

        paper, fuel = outcome.result.rows
        assert (paper.category, paper.confidence, paper.co2kg) == (Category.SUPPLY, Confidence.HIGH, 3.55)
        assert (fuel.category, fuel.confidence, fuel.co2kg) == (Category.TRANSPORT, Confidence.RULE, 7.24)
        assert client.requests[0].media_type == "image/png"

    @pytest.mark.asyncio
    async def test_reported_co2_survives_estimation(self, make_client, make_text_extractor, analysis_store):
        client = make_client(responses=[json.dumps([
            {"vendor": "Duke Energy", "description": "Electricity", "amount": 300, "category": "energy",
             "confidence": "high", "co2_kg": 55.556},
        ])])
        pipeline = ExpensePipeline(
            providers=ProviderChain(client),
            store=analysis_store,
            text_extractor=make_text_extractor([["Duke", "Energy", "quarterly", "statement", "electricity", "$300.00"]]),
        )

        outcome = await pipeline.run(PipelineSession([InputFile("report.pdf", b"%PDF")]))

        assert outcome.result.rows[0].co2kg == 55.56
        assert "Duke Energy quarterly statement" in client.requests[0].prompt

    @pytest.mark.asyncio
    async def test_pdf_heuristics_without_providers(self, make_text_extractor, analysis_store):
        pipeline = ExpensePipeline(
            store=analysis_store,
            text_extractor=make_text_extractor([
                ["Shell", "Gas", "Station", "$45.67", "01/15/2024"],
                ["Staples", "Office", "Supplies", "$19.99"],
            ]),
        )

        outcome = await pipeline.run(PipelineSession([InputFile("statement.pdf", b"%PDF")]))

        assert [(r.vendor, r.category) for r in outcome.result.rows] == [
            ("Shell Gas Station", Category.TRANSPORT),
            ("Staples Office Supplies", Category.SUPPLY),
        ]
        assert outcome.result.rows[0].date == "01/15/2024"

    @pytest.mark.asyncio
    async def test_pdf_without_line_items(self, make_text_extractor, pipeline):
        pipeline.text_extractor = make_text_extractor([
            ["This", "document", "describes", "our", "sustainability", "goals", "for", "next", "year"],
        ])

        outcome = await pipeline.run(PipelineSession([InputFile("goals.pdf", b"%PDF")]))

        assert outcome.state == PipelineState.ERRORED
        assert "No expense line items found" in outcome.error

    @pytest.mark.asyncio
    async def test_image_without_providers(self, pipeline):
        outcome = await pipeline.run(PipelineSession([InputFile("receipt.jpg", b"\xff\xd8")]))

        assert outcome.file_states[0].status == FileStatus.ERROR
        assert "API key is required" in outcome.file_states[0].message

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_serialized(self, pipeline, analysis_store):
        first = PipelineSession([csv_file("a.csv", "vendor,amount\nStaples,10")])
        second = PipelineSession([csv_file("b.csv", "vendor,amount\nUber,20")])

        outcomes = await asyncio.gather(pipeline.run(first), pipeline.run(second))

        assert all(o.state == PipelineState.PERSISTED for o in outcomes)
        stored = await analysis_store.load()
        assert [r.vendor for r in stored.rows] == ["Uber"]

    @pytest.mark.asyncio
    async def test_load_previous_and_reset(self, pipeline):
        assert await pipeline.load_previous() is None

        await pipeline.run(PipelineSession([csv_file("a.csv", "vendor,amount\nStaples,10")]))
        assert (await pipeline.load_previous()).rows[0].vendor == "Staples"

        assert await pipeline.reset() is True
        assert await pipeline.load_previous() is None


# =============================================================================
# CLI
# =============================================================================

class TestMain:

    @pytest.mark.asyncio
    async def test_summary_output(self, tmp_path, pipeline, capsys):
        path = tmp_path / "bills.csv"
        path.write_text('vendor,amount\n"PG&E Electric",120.00\nMystery Corp,50\n')

        with patch("sys.argv", ["greenlens", str(path), "--rules-only"]), \
                patch.object(ExpensePipeline, "from_settings", return_value=pipeline):
            await main()

        out = capsys.readouterr().out
        assert "[done] bills.csv: 2 row(s)" in out
        assert "Analyzed 2 expenses totaling $170.00" in out
        assert "Estimated emissions: 33.96 kg CO2e" in out

    @pytest.mark.asyncio
    async def test_usage(self, capsys):
        with patch("sys.argv", ["greenlens"]):
            await main()

        assert "Usage" in capsys.readouterr().out
