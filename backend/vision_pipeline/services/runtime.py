from __future__ import annotations

from dataclasses import dataclass

from vision_pipeline.core.settings import Settings
from vision_pipeline.services.content import ContentGenerator, get_generator
from vision_pipeline.services.events import JobEventBroker
from vision_pipeline.services.jobs import JobStore
from vision_pipeline.services.outputs import OutputStore
from vision_pipeline.services.pipeline import JobProcessor, build_stages
from vision_pipeline.services.sessions import SessionRegistry
from vision_pipeline.services.vision import ImageAnalyzer, get_analyzer
from vision_pipeline.services.worker import JobScheduler


@dataclass
class Pipeline:
    store: JobStore
    outputs: OutputStore
    sessions: SessionRegistry
    events: JobEventBroker
    processor: JobProcessor
    scheduler: JobScheduler


def build_pipeline(
    engine,
    config: Settings,
    analyzer: ImageAnalyzer | None = None,
    generator: ContentGenerator | None = None,
) -> Pipeline:
    store = JobStore(engine, max_retries=config.max_retries)
    outputs = OutputStore(engine)
    events = JobEventBroker()
    processor = JobProcessor(
        store,
        outputs,
        build_stages(
            analyzer or get_analyzer(config.analyzer_provider),
            generator or get_generator(config.generator_provider),
        ),
        job_timeout_s=config.job_timeout_s,
        on_update=events.publish,
    )
    scheduler = JobScheduler(
        store,
        processor,
        max_concurrent_jobs=config.max_concurrent_jobs,
        poll_interval_s=config.poll_interval_s,
    )
    return Pipeline(
        store=store,
        outputs=outputs,
        sessions=SessionRegistry(engine),
        events=events,
        processor=processor,
        scheduler=scheduler,
    )
