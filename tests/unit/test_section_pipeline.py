"""Tests for the sequential section pipeline."""

from datetime import timedelta

import pytest

from inkflow.errors import DocumentNotFoundError, SectionGenerationError, TransientError
from inkflow.persistence import Document, DocumentStatus, Section, SectionStatus
from inkflow.persistence.models import utcnow
from inkflow.pipeline import SectionPipeline
from inkflow.retry import RetryPolicy


class FakeAuthor:
    """Researcher and writer that record calls and fail on request."""

    def __init__(self, fail_research=(), fail_write=(), transient_write=0):
        self.fail_research = set(fail_research)
        self.fail_write = set(fail_write)
        self.transient_write = transient_write
        self.research_calls = []
        self.write_calls = []

    async def research(self, section, context, document):
        self.research_calls.append((section.order, [s.order for s in context]))
        if section.order in self.fail_research:
            raise ValueError("Validation error: research payload rejected")
        return {"sources": [f"source-{section.order}"]}

    async def write(self, section, research, context, document):
        self.write_calls.append((section.order, [s.order for s in context]))
        if self.transient_write:
            self.transient_write -= 1
            raise TransientError("HTTP 503 Service Unavailable")
        if section.order in self.fail_write:
            return "   "
        return f"{section.header}: {research['sources'][0]}"


async def create_document(repository, headers, workflow_id="wf-1"):
    document = Document(workflow_id=workflow_id, organization_id="org-1", title="Guide")
    sections = [
        Section(document_id=document.id, order=i, header=h)
        for i, h in enumerate(headers, start=1)
    ]
    await repository.create_document(document, sections)
    return document


def make_pipeline(repository, author, sleeper, **kwargs):
    return SectionPipeline(
        repository,
        author.research,
        author.write,
        policy=RetryPolicy(initial_delay=0.01),
        sleep=sleeper,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_sections_run_in_order_with_prior_context(repository, sleeper):
    document = await create_document(repository, ["Intro", "Body", "Outro"])
    author = FakeAuthor()

    result = await make_pipeline(repository, author, sleeper).run(document.id)

    assert result.status is DocumentStatus.COMPLETED
    assert result.completed_sections == 3
    assert author.research_calls == [(1, []), (2, [1]), (3, [1, 2])]
    assert author.write_calls == [(1, []), (2, [1]), (3, [1, 2])]
    sections = await repository.list_sections(document.id)
    assert [s.status for s in sections] == [SectionStatus.COMPLETED] * 3
    assert sections[1].content == "Body: source-2"
    stored = await repository.get_document(document.id)
    assert stored.status is DocumentStatus.COMPLETED
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_failure_halts_document_and_keeps_completed_sections(repository, sleeper):
    document = await create_document(repository, ["One", "Two", "Three"])
    author = FakeAuthor(fail_research={2})

    with pytest.raises(SectionGenerationError) as exc:
        await make_pipeline(repository, author, sleeper).run(document.id)

    assert exc.value.section_order == 2
    sections = await repository.list_sections(document.id)
    assert sections[0].status is SectionStatus.COMPLETED
    assert sections[1].status is SectionStatus.FAILED
    assert sections[1].error_details["stage"] == "research"
    assert sections[1].error_details["error_type"] == "validation_error"
    assert sections[1].error_details["retry_count"] == 0
    assert sections[2].status is SectionStatus.PENDING
    assert [order for order, _ in author.research_calls] == [1, 2]

    stored = await repository.get_document(document.id)
    assert stored.status is DocumentStatus.FAILED
    assert stored.error_details["failed_section"] == 2


@pytest.mark.asyncio
async def test_resume_skips_completed_and_reuses_research(repository, sleeper):
    document = await create_document(repository, ["One", "Two", "Three"])
    sections = await repository.list_sections(document.id)
    sections[0].status = SectionStatus.COMPLETED
    sections[0].content = "done"
    await repository.update_section(sections[0])
    sections[1].status = SectionStatus.RESEARCHED
    sections[1].research_payload = {"sources": ["cached"]}
    await repository.update_section(sections[1])
    author = FakeAuthor()

    result = await make_pipeline(repository, author, sleeper).run(document.id)

    assert result.status is DocumentStatus.COMPLETED
    assert [order for order, _ in author.research_calls] == [3]
    assert author.write_calls == [(2, [1]), (3, [1, 2])]
    resumed = await repository.list_sections(document.id)
    assert resumed[1].content == "Two: cached"
    assert resumed[0].content == "done"


@pytest.mark.asyncio
async def test_transient_write_errors_are_retried(repository, sleeper):
    document = await create_document(repository, ["Only"])
    author = FakeAuthor(transient_write=2)

    result = await make_pipeline(repository, author, sleeper).run(document.id)

    assert result.status is DocumentStatus.COMPLETED
    assert len(author.write_calls) == 3
    assert len(sleeper.delays) == 2


@pytest.mark.asyncio
async def test_empty_writer_output_is_terminal(repository, sleeper):
    document = await create_document(repository, ["Only"])
    author = FakeAuthor(fail_write={1})

    with pytest.raises(SectionGenerationError):
        await make_pipeline(repository, author, sleeper).run(document.id)

    assert len(author.write_calls) == 1
    section = (await repository.list_sections(document.id))[0]
    assert section.status is SectionStatus.FAILED
    assert section.error_details["stage"] == "writing"
    assert section.research_payload == {"sources": ["source-1"]}


@pytest.mark.asyncio
async def test_rerun_after_write_failure_resumes_at_writing(repository, sleeper):
    document = await create_document(repository, ["One", "Two"])
    failing = FakeAuthor(fail_write={2})
    with pytest.raises(SectionGenerationError):
        await make_pipeline(repository, failing, sleeper).run(document.id)

    author = FakeAuthor()
    result = await make_pipeline(repository, author, sleeper).run(document.id)

    assert result.status is DocumentStatus.COMPLETED
    assert author.research_calls == []
    assert author.write_calls == [(2, [1])]


@pytest.mark.asyncio
async def test_missing_document(repository, sleeper):
    with pytest.raises(DocumentNotFoundError):
        await make_pipeline(repository, FakeAuthor(), sleeper).run("missing")


async def abandon(repository, document, completed, lease_offset):
    """Leave ``document`` as a crashed worker would: generating, partly done."""
    sections = await repository.list_sections(document.id)
    for section in sections[:completed]:
        section.status = SectionStatus.COMPLETED
        section.content = f"{section.header}: earlier run"
        await repository.update_section(section)
    stored = await repository.get_document(document.id)
    stored.status = DocumentStatus.GENERATING
    stored.lease_expires_at = utcnow() + lease_offset
    await repository.update_document(stored)


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over_and_resumed(repository, sleeper):
    document = await create_document(repository, ["One", "Two", "Three", "Four"])
    await abandon(repository, document, completed=2, lease_offset=timedelta(seconds=-1))
    author = FakeAuthor()

    result = await make_pipeline(repository, author, sleeper).run(document.id)

    assert result.status is DocumentStatus.COMPLETED
    assert result.completed_sections == 4
    assert [order for order, _ in author.research_calls] == [3, 4]
    stored = await repository.get_document(document.id)
    assert stored.status is DocumentStatus.COMPLETED
    assert stored.lease_expires_at is None


@pytest.mark.asyncio
async def test_live_lease_keeps_second_run_out(repository, sleeper):
    document = await create_document(repository, ["One", "Two", "Three", "Four"])
    await abandon(repository, document, completed=2, lease_offset=timedelta(minutes=5))
    author = FakeAuthor()

    result = await make_pipeline(repository, author, sleeper).run(document.id)

    assert result.status is DocumentStatus.GENERATING
    assert result.completed_sections == 2
    assert author.research_calls == []
    sections = await repository.list_sections(document.id)
    assert [s.status for s in sections[2:]] == [SectionStatus.PENDING] * 2


@pytest.mark.asyncio
async def test_lease_is_held_while_generating_and_dropped_on_failure(repository, sleeper):
    document = await create_document(repository, ["One", "Two"])
    leases = []

    class LeaseWatcher(FakeAuthor):
        async def research(self, section, context, document):
            leases.append((await repository.get_document(document.id)).lease_expires_at)
            return await super().research(section, context, document)

    author = LeaseWatcher(fail_research={2})
    with pytest.raises(SectionGenerationError):
        await make_pipeline(repository, author, sleeper, lease_seconds=30).run(document.id)

    assert all(lease is not None and lease > utcnow() for lease in leases)
    stored = await repository.get_document(document.id)
    assert stored.status is DocumentStatus.FAILED
    assert stored.lease_expires_at is None
