import json

import pytest
from sqlmodel import Session, select

from vision_pipeline.models.entities import JobStatus, VisionJobOutput
from vision_pipeline.services.content import ContentGenerator, MockGenerator
from vision_pipeline.services.pipeline import JobProcessor, build_stages, compose_content_request
from vision_pipeline.services.vision import ImageAnalyzer, MockAnalyzer

ANALYSIS = json.dumps(
    {
        "colors": {"primary": ["#112233"], "secondary": ["#FFFFFF"], "description": "navy on white"},
        "mood_and_tone": {"mood": "calm", "tone": "premium"},
        "composition": {"layout": "centered"},
        "brand_insights": {
            "brand_personality": "confident",
            "perceived_industry": "tea",
            "target_audience": "young professionals",
        },
    }
)


class ScriptedAnalyzer(ImageAnalyzer):
    """Plays back results in order; exceptions are raised instead of returned."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def analyze(self, source_url, context, purpose, creativity_level):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingGenerator(ContentGenerator):
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return await MockGenerator().generate(request)


@pytest.fixture
def make_processor(store, outputs):
    def _make(analyzer=None, generator=None, job_timeout_s=300.0, on_update=None):
        return JobProcessor(
            store,
            outputs,
            build_stages(analyzer or ScriptedAnalyzer(ANALYSIS), generator or RecordingGenerator()),
            job_timeout_s=job_timeout_s,
            on_update=on_update,
        )

    return _make


@pytest.mark.asyncio
async def test_happy_path_completes_with_structured_output(make_processor, enqueue, outputs):
    job = enqueue()
    seen = []
    processor = make_processor(on_update=lambda j: seen.append((j.status, j.progress)))

    result = await processor.process(job)

    assert result.status == JobStatus.COMPLETE.value
    assert result.progress == 100
    assert result.stage1_output == ANALYSIS
    assert len(json.loads(result.stage2_output)) == 5
    assert result.error_message is None
    assert result.completed_at is not None
    assert seen[0] == (JobStatus.STAGE1_RUNNING.value, 25)
    assert (JobStatus.STAGE2_RUNNING.value, 60) in seen
    assert seen[-1] == (JobStatus.COMPLETE.value, 100)

    record = outputs.get_for_job(job.id)
    assert record is not None
    assert record.user_id == job.user_id
    assert json.loads(record.colors_primary) == ["#112233"]
    assert record.mood == "calm"
    assert record.brand_personality == "confident"
    assert len(json.loads(record.content_pieces)) == 5


@pytest.mark.asyncio
async def test_stage2_receives_full_stage1_output(make_processor, enqueue):
    job = enqueue(context="Shanghai teens", purpose="Launch", additional_instructions="20% off")
    generator = RecordingGenerator()

    await make_processor(generator=generator).process(job)

    (request,) = generator.requests
    assert request.product_info == f"Brand Visual Analysis:\n{ANALYSIS}"
    assert request.selling_points == "Launch"
    assert request.target_audience == "Shanghai teens"
    assert request.cta_offer == "20% off"


def test_compose_content_request_tolerates_missing_context(enqueue):
    job = enqueue(context="")
    request = compose_content_request(job, "{}")
    assert request.target_audience == ""
    assert "Target audience" not in request.to_prompt()


@pytest.mark.asyncio
async def test_fenced_analysis_is_stored_stripped(make_processor, enqueue):
    job = enqueue()
    result = await make_processor(analyzer=MockAnalyzer()).process(job)
    assert result.status == JobStatus.COMPLETE.value
    assert not result.stage1_output.startswith("```")
    json.loads(result.stage1_output)


@pytest.mark.asyncio
async def test_stage1_failure_then_retry_succeeds(make_processor, enqueue, store):
    job = enqueue()
    analyzer = ScriptedAnalyzer(RuntimeError("upstream 503"), ANALYSIS)
    processor = make_processor(analyzer=analyzer)

    failed = await processor.process(job)
    assert failed.status == JobStatus.ERROR.value
    assert failed.error_stage == "stage1"
    assert failed.retry_count == 1
    assert failed.progress == 25
    assert failed.error_message == "stage1: upstream 503. Retry 1/3"
    assert failed.stage1_output is None
    assert [j.id for j in store.get_retry_eligible(10)] == [job.id]

    done = await processor.process(store.get_by_id(job.id))
    assert done.status == JobStatus.COMPLETE.value
    assert done.retry_count == 1
    assert done.error_message is None and done.error_stage is None
    assert analyzer.calls == 2


@pytest.mark.asyncio
async def test_reprocessing_keeps_single_output_record(make_processor, enqueue, store, engine):
    job = enqueue()
    processor = make_processor()

    first = await processor.process(job)
    second = await processor.process(store.get_by_id(job.id))

    assert first.status == second.status == JobStatus.COMPLETE.value
    with Session(engine) as session:
        records = session.exec(select(VisionJobOutput).where(VisionJobOutput.job_id == job.id)).all()
    assert len(records) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_leave_job_in_error(make_processor, enqueue, store):
    job = enqueue()
    processor = make_processor(analyzer=ScriptedAnalyzer(RuntimeError("quota exceeded")))

    for attempt in range(1, 4):
        job = await processor.process(store.get_by_id(job.id))
        assert job.retry_count == attempt

    assert job.status == JobStatus.ERROR.value
    assert job.error_message == "Failed after 3 attempts in stage1: quota exceeded"
    assert store.get_retry_eligible(10) == []


@pytest.mark.asyncio
async def test_empty_analysis_fails_stage1(make_processor, enqueue, outputs):
    job = enqueue()
    generator = RecordingGenerator()
    result = await make_processor(analyzer=ScriptedAnalyzer("   "), generator=generator).process(job)

    assert result.status == JobStatus.ERROR.value
    assert result.error_stage == "stage1"
    assert "empty" in result.error_message
    assert generator.requests == []
    assert outputs.get_for_job(job.id) is None


@pytest.mark.asyncio
async def test_stage2_failure_keeps_stage1_output(make_processor, enqueue):
    job = enqueue()
    processor = make_processor(generator=RecordingGenerator(error=ValueError("model refused")))

    result = await processor.process(job)

    assert result.status == JobStatus.ERROR.value
    assert result.error_stage == "stage2"
    assert result.progress == 60
    assert result.stage1_output == ANALYSIS
    assert result.stage1_completed_at is not None
    assert result.stage2_output is None


@pytest.mark.asyncio
async def test_stale_job_times_out_without_calling_collaborators(make_processor, enqueue, store, backdate):
    job = enqueue()
    backdate(job.id, minutes=10)
    analyzer = ScriptedAnalyzer(ANALYSIS)

    result = await make_processor(analyzer=analyzer).process(store.get_by_id(job.id))

    assert result.status == JobStatus.ERROR.value
    assert result.error_stage == "timeout"
    assert result.retry_count == 1
    assert "300s timeout" in result.error_message
    assert analyzer.calls == 0


@pytest.mark.asyncio
async def test_manual_retry_gets_fresh_timeout_window(make_processor, enqueue, store, backdate):
    job = enqueue()
    backdate(job.id, minutes=10)
    processor = make_processor()

    timed_out = await processor.process(store.get_by_id(job.id))
    assert timed_out.error_stage == "timeout"

    requeued = store.mark_for_retry(job.id)
    assert not processor.is_stale(requeued)
    done = await processor.process(requeued)
    assert done.status == JobStatus.COMPLETE.value


@pytest.mark.asyncio
async def test_unparseable_outputs_still_complete_without_record(make_processor, enqueue, outputs):
    job = enqueue()
    processor = make_processor(
        analyzer=ScriptedAnalyzer("The image shows a calm navy palette."),
        generator=RecordingGenerator(result="Five captions, written as prose."),
    )

    result = await processor.process(job)

    assert result.status == JobStatus.COMPLETE.value
    assert result.stage2_output == "Five captions, written as prose."
    assert outputs.get_for_job(job.id) is None


@pytest.mark.asyncio
async def test_cancelled_job_is_dropped(make_processor, enqueue, store):
    job = enqueue()
    store.cancel(job.id)
    analyzer = ScriptedAnalyzer(ANALYSIS)

    result = await make_processor(analyzer=analyzer).process(job)

    assert store.get_by_id(job.id).status == JobStatus.CANCELLED.value
    assert result.id == job.id
    assert analyzer.calls == 0


@pytest.mark.asyncio
async def test_store_failure_propagates(make_processor, enqueue, store, monkeypatch):
    job = enqueue()

    def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "update_status", broken)
    with pytest.raises(RuntimeError, match="database is locked"):
        await make_processor().process(job)


def test_staleness_of_a_stored_job(make_processor, enqueue, store, backdate):
    job = enqueue()
    processor = make_processor()

    assert not processor.is_stale(store.get_by_id(job.id))
    backdate(job.id, minutes=10)
    assert processor.is_stale(store.get_by_id(job.id))


@pytest.mark.asyncio
async def test_recover_fails_stalled_job_as_timeout(make_processor, enqueue, store, stall):
    job = enqueue()
    stall(job.id, minutes=60, status=JobStatus.STAGE2_RUNNING, progress=60)

    result = await make_processor().recover(store.get_by_id(job.id))

    assert result.status == JobStatus.ERROR.value
    assert result.error_stage == "timeout"
    assert result.progress == 60
    assert result.retry_count == 1
    assert "stalled in stage2_running" in result.error_message
