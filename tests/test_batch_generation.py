import os
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from certbatch.app import db
from certbatch.errors import BatchGenerationError, CertificateRenderError
from certbatch.models import Batch, Participant, Template
from certbatch.services.batch_generation import (
    BatchGenerator,
    ProgressChannel,
    SqlBatchRepository,
    generate_batch,
    get_batch_progress,
    regenerate_failed,
)
from certbatch.shared.certificates import render_certificate_pdf
from certbatch.shared.object_storage import CertificateStorage

PLACEMENT = {
    "name": {"y": 300, "fontSize": 36},
    "certificateId": {"x": 60, "y": 40, "fontSize": 12},
}
NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


def _seed(app, pdf_bytes, names=("Ann Lee", "Bob Stone"), categories=("Technical",)):
    path = os.path.join(app.config["SITE_ROOT"], "templates", "base.pdf")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(pdf_bytes)
    template = Template(
        name="Base", categories=list(categories), file_path=path, surface_kind="pdf", placement_config=PLACEMENT
    )
    batch = Batch(name="Spring Fest", event_categories=list(categories), template=template)
    db.session.add_all([template, batch])
    db.session.flush()
    for n, name in enumerate(names, start=1):
        db.session.add(
            Participant(
                sr_no=n,
                name=name,
                email=f"p{n}@example.com",
                certificate_id=f"SOU-20240315-MAR-{n:05d}",
                batch_id=batch.id,
            )
        )
    batch.total_participants = len(names)
    db.session.commit()
    return batch.id


class FlakyRenderer:
    """Fails for the listed names, renders everyone else."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def __call__(self, surface, name, certificate_id, placement):
        self.calls.append(name)
        if name in self.failing:
            raise CertificateRenderError(f"cannot render {name}")
        return render_certificate_pdf(surface, name, certificate_id, placement)


def _generator(app, renderer=None, storage=None, channel=None):
    return BatchGenerator(
        SqlBatchRepository(),
        storage,
        app.config["SITE_ROOT"],
        renderer=renderer or FlakyRenderer(),
        channel=channel,
    )


def test_two_participants_rendered_and_stored(app, pdf_template_bytes, s3_client):
    batch_id = _seed(app, pdf_template_bytes)
    storage = CertificateStorage(s3_client, "certs", clock=lambda: NOW)
    result = _generator(app, storage=storage).generate(batch_id)

    assert result.status == "completed"
    assert (result.total, result.succeeded, result.failed) == (2, 2, 0)
    assert result.storage_errors == []
    batch = db.session.get(Batch, batch_id)
    assert batch.status == "completed"
    assert batch.certificates_generated == 2
    for p in batch.participants:
        assert os.path.isfile(p.certificate_path)
        assert p.certificate_path.endswith(os.path.join(f"batch_{batch_id}", f"{p.certificate_id}.pdf"))
        assert p.cloud_url.endswith(
            f"certificates/2024-03-15/technical/batch_{batch_id}/{p.certificate_id}.pdf"
        )
    stored = s3_client.objects[result.certificates[0].storage_key]
    assert stored["Metadata"]["participantName"] == "Ann Lee"
    assert stored["Metadata"]["batchName"] == "Spring Fest"


def test_partial_failure_is_isolated(app, pdf_template_bytes):
    names = ("Ann Lee", "Bob Stone", "Cy Twombly", "Di Prince")
    batch_id = _seed(app, pdf_template_bytes, names=names)
    renderer = FlakyRenderer(failing={"Bob Stone", "Di Prince"})
    result = _generator(app, renderer=renderer).generate(batch_id)

    assert renderer.calls == list(names)
    assert (result.succeeded, result.failed) == (2, 2)
    assert [e["name"] for e in result.errors] == ["Bob Stone", "Di Prince"]
    assert "cannot render Bob Stone" in result.errors[0]["error"]
    batch = db.session.get(Batch, batch_id)
    assert batch.status == "completed"
    assert batch.certificates_generated == 2
    rendered = {p.name: p.certificate_path for p in batch.participants}
    assert rendered["Bob Stone"] is None
    assert rendered["Ann Lee"]


def test_all_failures_mark_batch_failed(app, pdf_template_bytes):
    batch_id = _seed(app, pdf_template_bytes)
    renderer = FlakyRenderer(failing={"Ann Lee", "Bob Stone"})
    result = _generator(app, renderer=renderer).generate(batch_id)
    assert result.status == "failed"
    assert (result.total, result.succeeded, result.failed) == (2, 0, 2)
    assert len(result.errors) == 2
    assert db.session.get(Batch, batch_id).status == "failed"


def test_storage_failure_keeps_render(app, pdf_template_bytes, s3_client):
    batch_id = _seed(app, pdf_template_bytes)
    s3_client.fail_puts = True
    storage = CertificateStorage(s3_client, "certs", clock=lambda: NOW)
    result = _generator(app, storage=storage).generate(batch_id)

    assert result.status == "completed"
    assert result.succeeded == 2
    assert result.failed == 0
    assert len(result.storage_errors) == 2
    for p in db.session.get(Batch, batch_id).participants:
        assert p.certificate_path
        assert p.cloud_url is None


def test_progress_events_in_participant_order(app, pdf_template_bytes):
    names = ("Ann Lee", "Bob Stone", "Cy Twombly")
    batch_id = _seed(app, pdf_template_bytes, names=names)
    channel = ProgressChannel()
    events = []
    channel.subscribe(events.append)
    _generator(app, renderer=FlakyRenderer({"Bob Stone"}), channel=channel).generate(batch_id)

    assert [e.current_participant for e in events] == list(names)
    assert [e.processed for e in events] == [1, 2, 3]
    assert all(e.total == 3 for e in events)
    assert events[1].error
    assert events[-1].succeeded == 2
    assert events[-1].failed == 1


def test_unsubscribe_stops_delivery():
    channel = ProgressChannel()
    seen = []
    unsubscribe = channel.subscribe(seen.append)
    unsubscribe()
    channel.publish(object())
    assert seen == []


def test_regenerate_only_retries_missing(app, pdf_template_bytes):
    names = ("Ann Lee", "Bob Stone", "Cy Twombly")
    batch_id = _seed(app, pdf_template_bytes, names=names)
    _generator(app, renderer=FlakyRenderer({"Bob Stone"})).generate(batch_id)

    renderer = FlakyRenderer()
    result = _generator(app, renderer=renderer).regenerate_failed(batch_id)
    assert renderer.calls == ["Bob Stone"]
    assert result.succeeded == 1
    batch = db.session.get(Batch, batch_id)
    assert batch.status == "completed"
    assert batch.certificates_generated == 3

    again = FlakyRenderer()
    result = _generator(app, renderer=again).regenerate_failed(batch_id)
    assert again.calls == []
    assert result.total == 0
    assert db.session.get(Batch, batch_id).certificates_generated == 3


def test_regenerate_twice_leaves_storage_untouched(app, pdf_template_bytes, s3_client):
    names = ("Ann Lee", "Bob Stone", "Cy Twombly")
    batch_id = _seed(app, pdf_template_bytes, names=names)
    storage = CertificateStorage(s3_client, "certs", clock=lambda: NOW)
    _generator(app, renderer=FlakyRenderer({"Bob Stone"}), storage=storage).generate(batch_id)
    _generator(app, storage=storage).regenerate_failed(batch_id)

    urls = {p.name: p.cloud_url for p in db.session.get(Batch, batch_id).participants}
    assert all(urls.values())
    objects = dict(s3_client.objects)
    puts = list(s3_client.put_keys)
    assert len(puts) == 3

    for _ in range(2):
        renderer = FlakyRenderer()
        result = _generator(app, renderer=renderer, storage=storage).regenerate_failed(batch_id)
        assert renderer.calls == []
        assert result.total == 0

    assert {p.name: p.cloud_url for p in db.session.get(Batch, batch_id).participants} == urls
    assert s3_client.objects == objects
    assert s3_client.put_keys == puts


class FailingSaveRepository(SqlBatchRepository):
    def __init__(self, failing):
        self.failing = set(failing)

    def mark_rendered(self, participant, local_path, cloud_url):
        if participant.name in self.failing:
            participant.certificate_path = local_path
            raise OperationalError("UPDATE participants", {}, Exception("db hiccup"))
        super().mark_rendered(participant, local_path, cloud_url)


def test_persist_failure_is_isolated(app, pdf_template_bytes):
    batch_id = _seed(app, pdf_template_bytes)
    generator = BatchGenerator(
        FailingSaveRepository({"Ann Lee"}),
        None,
        app.config["SITE_ROOT"],
        renderer=FlakyRenderer(),
    )
    result = generator.generate(batch_id)

    assert (result.total, result.succeeded, result.failed) == (2, 1, 1)
    assert result.status == "completed"
    (error,) = result.errors
    assert error["name"] == "Ann Lee"
    assert "db hiccup" in error["error"]
    assert [c.name for c in result.certificates] == ["Bob Stone"]
    batch = db.session.get(Batch, batch_id)
    assert batch.status == "completed"
    assert batch.certificates_generated == 1
    rendered = {p.name: p.certificate_path for p in batch.participants}
    assert rendered["Ann Lee"] is None
    assert rendered["Bob Stone"]


def test_regenerate_recovers_failed_batch(app, pdf_template_bytes):
    batch_id = _seed(app, pdf_template_bytes)
    _generator(app, renderer=FlakyRenderer({"Ann Lee", "Bob Stone"})).generate(batch_id)
    assert db.session.get(Batch, batch_id).status == "failed"

    result = _generator(app).regenerate_failed(batch_id)
    assert result.status == "completed"
    assert db.session.get(Batch, batch_id).certificates_generated == 2


def test_missing_batch_raises(app):
    with pytest.raises(BatchGenerationError):
        _generator(app).generate(999)


def test_empty_batch_is_fatal(app, pdf_template_bytes):
    batch_id = _seed(app, pdf_template_bytes, names=())
    with pytest.raises(BatchGenerationError):
        _generator(app).generate(batch_id)
    assert db.session.get(Batch, batch_id).status == "failed"


def test_missing_template_file_is_fatal(app, pdf_template_bytes):
    batch_id = _seed(app, pdf_template_bytes)
    os.remove(db.session.get(Batch, batch_id).template.file_path)
    with pytest.raises(BatchGenerationError):
        _generator(app).generate(batch_id)
    assert db.session.get(Batch, batch_id).status == "failed"


def test_progress_snapshot(app, pdf_template_bytes):
    batch_id = _seed(app, pdf_template_bytes, names=("Ann Lee", "Bob Stone", "Cy Twombly", "Di Prince"))
    _generator(app, renderer=FlakyRenderer({"Cy Twombly"})).generate(batch_id)
    snapshot = _generator(app).get_progress(batch_id)
    assert snapshot.status == "completed"
    assert snapshot.total == 4
    assert snapshot.generated == 3
    assert snapshot.percent == pytest.approx(75.0)
    flags = {p["name"]: p["has_local_certificate"] for p in snapshot.participants}
    assert flags["Cy Twombly"] is False
    assert all(p["has_cloud_certificate"] is False for p in snapshot.participants)


def test_module_level_entry_points(app, pdf_template_bytes):
    batch_id = _seed(app, pdf_template_bytes)
    events = []
    result = generate_batch(batch_id, progress=events.append)
    assert result.status == "completed"
    assert len(events) == 2
    assert result.as_dict()["successful"] == 2
    assert regenerate_failed(batch_id).total == 0
    assert get_batch_progress(batch_id).generated == 2
