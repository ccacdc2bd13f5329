"""
Expense Analysis Pipeline

Sequences per-file extraction, two-stage categorization, emission estimation
and persistence for one batch of uploaded files.

    Idle -> Extracting -> Classifying -> Estimating -> Persisted
                 \\-> Errored (no records extracted from any file)

Files are processed one at a time, in queue order; a failure is recorded on
the file that caused it and the batch carries on. Only one run executes at a
time per pipeline instance.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from .classification import ProbabilisticClassifier, rule_based_category
from .config import ACCEPTED_EXTENSIONS, IMAGE_EXTENSIONS, Settings
from .errors import ClassificationError, ExtractionError, UnsupportedFileError
from .extraction import StructuredExtractionClient
from .heuristics import extract_rows_from_text
from .models import AnalysisResult, Category, Confidence, ExpenseRecord
from .pdf_text import DocumentTextExtractor, get_renderer
from .providers import ProviderChain, build_provider_chain
from .storage import AnalysisStore, build_store
from .tabular import parse_csv

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS
# =============================================================================

class FileStatus(str, Enum):
    """Per-file processing status."""
    WAITING = "waiting"
    PARSING = "parsing"
    DONE = "done"
    ERROR = "error"


class PipelineState(str, Enum):
    """Stage of a pipeline run."""
    IDLE = "idle"
    EXTRACTING = "extracting"
    CLASSIFYING = "classifying"
    ESTIMATING = "estimating"
    PERSISTED = "persisted"
    ERRORED = "errored"


MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}


# =============================================================================
# INPUT FILES AND QUEUE
# =============================================================================

@dataclass
class InputFile:
    """One uploaded file."""
    name: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def extension(self) -> str:
        return self.name.rsplit(".", 1)[-1].lower() if "." in self.name else ""

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def media_type(self) -> str:
        if self.content_type and self.content_type.startswith("image/"):
            return self.content_type
        return MEDIA_TYPES.get(self.extension, "image/jpeg")

    @classmethod
    def from_path(cls, path: str) -> "InputFile":
        file_path = Path(path)
        return cls(name=file_path.name, content=file_path.read_bytes())


class FileQueue:
    """Files selected for the next run, deduplicated by (name, size)."""

    def __init__(self):
        self.files: List[InputFile] = []

    def add(self, file: InputFile) -> bool:
        """
        Queue a file. Returns False for a duplicate.

        Raises:
            UnsupportedFileError: the extension is not accepted.
        """
        if file.extension not in ACCEPTED_EXTENSIONS:
            raise UnsupportedFileError(file.name)
        if any(f.name == file.name and f.size == file.size for f in self.files):
            return False
        self.files.append(file)
        return True

    def add_many(self, files: Iterable[InputFile]) -> List[str]:
        """Queue several files; returns the rejection messages."""
        rejected = []
        for file in files:
            try:
                self.add(file)
            except UnsupportedFileError as e:
                rejected.append(str(e))
        return rejected

    def remove(self, index: int):
        del self.files[index]

    def clear(self):
        self.files = []

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[InputFile]:
        return iter(self.files)


# =============================================================================
# SESSION AND OUTCOME
# =============================================================================

@dataclass
class FileState:
    status: FileStatus = FileStatus.WAITING
    message: Optional[str] = None
    record_count: int = 0


StatusCallback = Callable[[int, InputFile, FileState], None]


@dataclass
class PipelineSession:
    """State owned by one pipeline run."""
    files: List[InputFile]
    rules_only: bool = False
    on_status: Optional[StatusCallback] = None
    state: PipelineState = PipelineState.IDLE
    records: List[ExpenseRecord] = field(default_factory=list)
    file_states: List[FileState] = field(init=False)

    def __post_init__(self):
        self.file_states = [FileState() for _ in self.files]

    @classmethod
    def from_queue(cls, queue: FileQueue, **kwargs) -> "PipelineSession":
        return cls(files=list(queue.files), **kwargs)

    def set_file_status(self, index: int, status: FileStatus, message: Optional[str] = None, record_count: int = 0):
        state = self.file_states[index]
        state.status = status
        state.message = message
        state.record_count = record_count
        if self.on_status is not None:
            self.on_status(index, self.files[index], state)

    def first_error(self) -> Optional[str]:
        for state in self.file_states:
            if state.status == FileStatus.ERROR and state.message:
                return state.message
        return None


@dataclass
class PipelineOutcome:
    """Result-or-error value returned by a run."""
    state: PipelineState
    file_states: List[FileState]
    result: Optional[AnalysisResult] = None
    error: Optional[str] = None
    classification_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def retry_rules_only(self) -> bool:
        """True when categorization failed and a rules-only rerun is offered."""
        return self.classification_error is not None


# =============================================================================
# PIPELINE
# =============================================================================

class ExpensePipeline:
    """
    Orchestrates extraction, categorization, estimation and persistence.

    Every collaborator is injectable; ``from_settings`` wires the defaults.
    """

    def __init__(
        self,
        providers: Optional[ProviderChain] = None,
        store: Optional[AnalysisStore] = None,
        text_extractor: Optional[DocumentTextExtractor] = None,
    ):
        providers = providers or ProviderChain()
        self.extraction_client = StructuredExtractionClient(providers)
        self.classifier = ProbabilisticClassifier(providers)
        self.text_extractor = text_extractor or DocumentTextExtractor()
        self.store = store
        self._run_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ExpensePipeline":
        settings = settings or Settings.from_env()
        return cls(
            providers=build_provider_chain(settings),
            store=build_store(settings),
            text_extractor=DocumentTextExtractor(get_renderer(settings.pdf_backend)),
        )

    async def extract_file(self, file: InputFile) -> List[ExpenseRecord]:
        """Dispatch one file to the parser for its format."""
        extension = file.extension

        if extension == "csv":
            return parse_csv(file.content.decode("utf-8-sig", errors="replace"))

        if extension == "pdf":
            text = await self.text_extractor.extract_text(file.content)
            if self.extraction_client.configured:
                return await self.extraction_client.extract_from_text(text)
            rows = extract_rows_from_text(text)
            if not rows:
                raise ExtractionError(
                    "No expense line items found in this PDF. Configure an API key for better parsing."
                )
            return rows

        if extension in IMAGE_EXTENSIONS:
            return await self.extraction_client.extract_from_image(file.content, file.media_type, file.name)

        raise UnsupportedFileError(file.name)

    async def run(self, session: PipelineSession) -> PipelineOutcome:
        """Run the whole pipeline for one session. Never raises for per-file problems."""
        async with self._run_lock:
            return await self._run(session)

    async def _run(self, session: PipelineSession) -> PipelineOutcome:
        await self._extract_all(session)

        if not session.records:
            session.state = PipelineState.ERRORED
            detail = session.first_error()
            message = "No valid expense data could be extracted from the uploaded files."
            if detail:
                message += f" Error: {detail}"
            logger.error(message)
            return PipelineOutcome(state=session.state, file_states=session.file_states, error=message)

        classification_error = await self._classify(session)

        session.state = PipelineState.ESTIMATING
        for record in session.records:
            record.apply_emission_factor()

        result = AnalysisResult.from_rows(session.records)
        if self.store is not None:
            await self.store.save(result)
        session.state = PipelineState.PERSISTED

        logger.info(
            f"Analyzed {len(result.rows)} expense(s) totaling ${result.total_amount:,.2f}, "
            f"estimated {result.total_co2:,.2f} kg CO2e"
        )
        return PipelineOutcome(
            state=session.state,
            file_states=session.file_states,
            result=result,
            classification_error=classification_error,
        )

    async def _extract_all(self, session: PipelineSession):
        session.state = PipelineState.EXTRACTING
        total = len(session.files)

        for index, file in enumerate(session.files):
            session.set_file_status(index, FileStatus.PARSING)
            logger.info(f'Parsing "{file.name}" ({index + 1} of {total})')
            try:
                rows = await self.extract_file(file)
            except Exception as e:
                logger.error(f'Error processing "{file.name}": {e}')
                session.set_file_status(index, FileStatus.ERROR, str(e))
                continue
            session.records.extend(rows)
            session.set_file_status(index, FileStatus.DONE, record_count=len(rows))

    async def _classify(self, session: PipelineSession) -> Optional[str]:
        """Categorize every record in place; returns the classifier error, if any."""
        session.state = PipelineState.CLASSIFYING
        unresolved = []

        for record in session.records:
            if record.category is not None:
                if record.confidence is None:
                    record.confidence = Confidence.MEDIUM
                continue
            match = rule_based_category(record.vendor, record.description)
            if match:
                record.assign(match.category, match.confidence)
            else:
                unresolved.append(record)

        if not unresolved:
            return None

        if session.rules_only:
            _assign_default(unresolved)
            return None

        try:
            await self.classifier.categorize(unresolved)
        except ClassificationError as e:
            logger.warning(f"AI categorization failed, defaulting {len(unresolved)} expense(s) to other: {e}")
            _assign_default(unresolved)
            return f"AI categorization failed: {e}"
        return None

    async def load_previous(self) -> Optional[AnalysisResult]:
        if self.store is None:
            return None
        return await self.store.load()

    async def reset(self) -> bool:
        if self.store is None:
            return False
        return await self.store.reset()


def _assign_default(records: List[ExpenseRecord]):
    for record in records:
        record.assign(Category.OTHER, Confidence.LOW)


# =============================================================================
# MAIN
# =============================================================================

async def main():
    """Analyze local files: python -m greenlens.pipeline FILE [FILE ...] [--rules-only]"""
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    rules_only = "--rules-only" in sys.argv[1:]

    if not args:
        print("Usage: python -m greenlens.pipeline FILE [FILE ...] [--rules-only]")
        return

    queue = FileQueue()
    for path in args:
        if not Path(path).exists():
            print(f"File not found: {path}")
            continue
        try:
            queue.add(InputFile.from_path(path))
        except UnsupportedFileError as e:
            print(e)

    def report(index: int, file: InputFile, state: FileState):
        if state.status in (FileStatus.DONE, FileStatus.ERROR):
            detail = state.message or f"{state.record_count} row(s)"
            print(f"  [{state.status.value}] {file.name}: {detail}")

    pipeline = ExpensePipeline.from_settings()
    outcome = await pipeline.run(PipelineSession.from_queue(queue, rules_only=rules_only, on_status=report))

    if not outcome.ok:
        print(outcome.error)
        return
    if outcome.classification_error:
        print(f"{outcome.classification_error} (rerun with --rules-only)")

    result = outcome.result
    print()
    print(f"Analyzed {len(result.rows)} expenses totaling ${result.total_amount:,.2f}")
    print(f"Estimated emissions: {result.total_co2:,.2f} kg CO2e")
    for category, summary in result.summary.items():
        if summary.count:
            print(f"  {category.value:<10} {summary.count:>4}  ${summary.amount:>12,.2f}  {summary.co2:>10,.2f} kg")


def run_cli():
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())


if __name__ == "__main__":
    run_cli()
