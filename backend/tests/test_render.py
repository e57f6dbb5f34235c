import json
from pathlib import Path

import pytest

from reelforge.integrations.process import CmdResult
from reelforge.models import Project, ProjectStatus, Render, RenderStatus, Template
from reelforge.schemas import RenderJob
from reelforge.services.outcome import RetryableFailure, Success, TerminalFailure
from reelforge.services.render_service import (
    build_props,
    build_render_command,
    classify_render_failure,
    mark_render_failed,
    process_render_job,
)
from reelforge.settings import get_settings


class FakeRenderer:
    """Stands in for the render CLI: records props and writes (or not) the output file."""

    def __init__(self, result: CmdResult | None = None, *, output: bytes | None = b"\x00" * 4096):
        self.result = result or CmdResult(0, "Rendered", "")
        self.output = output
        self.props: dict | None = None
        self.cmd: list[str] | None = None
        self.kwargs: dict | None = None

    async def __call__(self, cmd, **kwargs):
        self.cmd = list(cmd)
        self.kwargs = kwargs
        self.props = json.loads(Path(cmd[cmd.index("--props") + 1]).read_text())
        if self.output is not None and self.result.returncode == 0:
            Path(cmd[cmd.index("--output") + 1]).write_bytes(self.output)
        return self.result


def _job(render: Render, project: Project) -> RenderJob:
    return RenderJob(
        render_id=render.id,
        project_id=project.id,
        template_id=project.template_id,
        slot_fills=project.slot_fills or [],
        music_url=project.music_url,
        duration_seconds=12.0,
        fps=30,
    )


@pytest.fixture
async def pending_render(add):
    template = await add(Template(name="Promo", duration_seconds=12.0))
    project = await add(Project(
        user_id="u1",
        template_id=template.id,
        name="Launch",
        status=ProjectStatus.ready.value,
        slot_fills=[{"slotId": "headline", "value": "Hello"}, {"slotId": "photo", "value": "https://img.test/1.jpg"}],
        music_url="https://audio.test/beat.mp3",
    ))
    render = await add(Render(project_id=project.id, user_id="u1"))
    return render, project


def test_build_props():
    job = RenderJob(
        render_id="r1",
        project_id="p1",
        template_id="t1",
        slot_fills=[{"slotId": "a", "value": 1}, {"slot_id": "b", "value": "two"}, {"value": "orphan"}],
        duration_seconds=8.0,
    )
    assert build_props(job) == {"duration": 8.0, "fps": 30, "slots": {"a": 1, "b": "two"}}
    assert build_props(job.model_copy(update={"music_url": "m.mp3"}))["musicUrl"] == "m.mp3"


def test_build_render_command():
    cmd = build_render_command(Path("/w/props.json"), Path("/w/out.mp4"), "t1", get_settings())
    assert cmd[:3] == ["npx", "remotion", "render"]
    assert cmd[cmd.index("--props") + 1] == "/w/props.json"
    assert cmd[cmd.index("--output") + 1] == "/w/out.mp4"
    assert cmd[cmd.index("--timeout") + 1] == "600"
    assert "--disable-logging" in cmd
    assert cmd[-1] == "TemplateRenderer-t1"


@pytest.mark.parametrize(
    "result,code,retriable",
    [
        (CmdResult(-9, "", "", timed_out=True), "RENDER_TIMEOUT", False),
        (CmdResult(1, "", "Error: delayRender() timeout after 30000ms"), "RENDER_TIMEOUT", False),
        (CmdResult(1, "", "Could not find composition component Foo"), "COMPONENT_NOT_FOUND", False),
        (CmdResult(1, "", "Invalid props passed to composition"), "INVALID_PROPS", False),
        (CmdResult(139, "", "Segmentation fault"), "REMOTION_CLI_FAILED", True),
    ],
)
def test_classify_render_failure(result, code, retriable):
    error = classify_render_failure(result)
    assert error.code == code
    assert error.retriable is retriable


async def test_render_done(session, reload, storage, tmp_path, pending_render):
    render, project = pending_render
    renderer = FakeRenderer()

    outcome = await process_render_job(session, _job(render, project), storage=storage, runner=renderer, work_dir=tmp_path)

    assert isinstance(outcome, Success)
    done = await reload(Render, render.id)
    assert done.status == RenderStatus.done.value
    assert done.minio_key == f"renders/{render.id}.mp4"
    assert done.output_url.startswith(f"https://blob.test/renders/{render.id}.mp4")
    assert done.file_size_bytes == 4096
    assert done.started_at is not None and done.completed_at is not None
    assert done.error_code is None and done.error_message is None
    assert storage.objects[done.minio_key] == b"\x00" * 4096

    assert renderer.props == {
        "duration": 12.0,
        "fps": 30,
        "slots": {"headline": "Hello", "photo": "https://img.test/1.jpg"},
        "musicUrl": "https://audio.test/beat.mp3",
    }
    assert renderer.kwargs["timeout"] == get_settings().render_kill_timeout_sec
    assert (await reload(Project, project.id)).status == ProjectStatus.done.value
    assert not (tmp_path / "render" / render.id).exists()


async def test_render_timeout_fails_without_artifact(session, reload, storage, tmp_path, pending_render):
    render, project = pending_render
    renderer = FakeRenderer(CmdResult(-9, "", "", timed_out=True))

    outcome = await process_render_job(session, _job(render, project), storage=storage, runner=renderer, work_dir=tmp_path)

    assert isinstance(outcome, TerminalFailure)
    failed = await reload(Render, render.id)
    assert failed.status == RenderStatus.failed.value
    assert failed.error_code == "RENDER_TIMEOUT"
    assert failed.completed_at is not None
    assert failed.minio_key is None and failed.output_url is None
    assert storage.objects == {}
    assert (await reload(Project, project.id)).status == ProjectStatus.ready.value
    assert not (tmp_path / "render" / render.id).exists()


async def test_cli_crash_is_retried(session, reload, storage, tmp_path, pending_render):
    render, project = pending_render
    renderer = FakeRenderer(CmdResult(1, "", "Chrome crashed unexpectedly"))

    outcome = await process_render_job(session, _job(render, project), storage=storage, runner=renderer, work_dir=tmp_path)

    assert isinstance(outcome, RetryableFailure)
    assert outcome.code == "REMOTION_CLI_FAILED"
    still = await reload(Render, render.id)
    assert still.status == RenderStatus.processing.value
    assert still.error_code is None
    assert not (tmp_path / "render" / render.id).exists()


async def test_clean_exit_without_output(session, storage, tmp_path, pending_render):
    render, project = pending_render
    renderer = FakeRenderer(output=None)

    outcome = await process_render_job(session, _job(render, project), storage=storage, runner=renderer, work_dir=tmp_path)

    assert isinstance(outcome, RetryableFailure)
    assert outcome.code == "REMOTION_CLI_FAILED"


async def test_finished_render_is_skipped(session, add, storage, tmp_path, pending_render):
    render, project = pending_render
    other = await add(Render(project_id=project.id, status=RenderStatus.failed.value))
    renderer = FakeRenderer()

    outcome = await process_render_job(session, _job(other, project), storage=storage, runner=renderer, work_dir=tmp_path)

    assert isinstance(outcome, Success)
    assert outcome.skipped
    assert renderer.cmd is None


async def test_artifact_removed_when_render_failed_meanwhile(session, reload, storage, tmp_path, pending_render):
    render, project = pending_render
    render_id = render.id

    class OverrunRenderer(FakeRenderer):
        async def __call__(self, cmd, **kwargs):
            result = await super().__call__(cmd, **kwargs)
            # the watchdog gives up on the row while the CLI is still busy
            await mark_render_failed(session, render_id, "STUCK", "watchdog: stuck PROCESSING > 90m")
            return result

    outcome = await process_render_job(
        session, _job(render, project), storage=storage, runner=OverrunRenderer(), work_dir=tmp_path
    )

    assert isinstance(outcome, TerminalFailure)
    assert outcome.code == "STATE_CONFLICT"
    assert storage.objects == {}
    failed = await reload(Render, render_id)
    assert failed.status == RenderStatus.failed.value
    assert failed.error_code == "STUCK"
    assert failed.minio_key is None
