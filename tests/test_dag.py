"""Tests for the DAG engine – runs without any external dependencies."""

import pytest

from enrollment_pipeline.pipeline.dag import DAG, TaskStatus


def test_stages_execute_in_dependency_order():
    """Tasks run in dependency order and context flows downstream."""
    calls = []

    def collect(ctx):
        calls.append("collect")
        return {"records": ["hr-1"]}

    def convert(ctx):
        calls.append("convert")
        return {"resources": [("Patient", r) for r in ctx["records"]]}

    def transmit(ctx):
        calls.append("transmit")
        assert ctx["resources"] == [("Patient", "hr-1")]

    dag = DAG("emr_transmission")
    dag.add_task("transmit", transmit, depends_on=["convert"])
    dag.add_task("convert", convert, depends_on=["collect"])
    dag.add_task("collect", collect)

    summary = dag.run({"enrollment_id": "e-1"})
    assert summary["status"] == "completed"
    assert calls == ["collect", "convert", "transmit"]


def test_failure_keeps_exception_and_skips_transitively():
    """The raised exception stays on the node; skips cascade past direct dependents."""

    class TransmitError(Exception):
        pass

    def transmit(ctx):
        raise TransmitError("EMR responded HTTP 500")

    def record(ctx):
        pytest.fail("Should not have run")

    dag = DAG("partial_failure")
    dag.add_task("convert", lambda ctx: {"resources": 3})
    dag.add_task("transmit", transmit, depends_on=["convert"])
    dag.add_task("acknowledge", record, depends_on=["transmit"])
    dag.add_task("notify", record, depends_on=["acknowledge"])

    summary = dag.run()
    assert summary["status"] == "failed"
    assert summary["tasks"]["transmit"]["error_type"] == "TransmitError"
    assert isinstance(dag.failed_task().exception, TransmitError)
    assert dag.tasks["notify"].status == TaskStatus.SKIPPED
    assert dag.result("resources") == 3
    assert dag.result("acknowledged") is None


def test_cycles_and_unknown_dependencies_are_rejected():
    dag = DAG("cycle")
    dag.add_task("convert", lambda ctx: None, depends_on=["validate"])
    dag.add_task("validate", lambda ctx: None, depends_on=["convert"])
    with pytest.raises(ValueError, match="Cycle detected"):
        dag.run()

    dangling = DAG("dangling")
    dangling.add_task("transmit", lambda ctx: None, depends_on=["missing"])
    with pytest.raises(ValueError, match="unknown task"):
        dangling.run()


def test_duplicate_task_name_rejected():
    dag = DAG("dupe").add_task("collect", lambda ctx: None)
    with pytest.raises(ValueError, match="Duplicate"):
        dag.add_task("collect", lambda ctx: None)


def test_fan_in_merges_upstream_results():
    """Patient and Condition converted independently, transmitted together."""
    dag = DAG("fan_in")
    dag.add_task("collect", lambda ctx: {"count": 1})
    dag.add_task("patient", lambda ctx: {"patient": ctx["count"]}, depends_on=["collect"])
    dag.add_task("condition", lambda ctx: {"condition": ctx["count"] + 1}, depends_on=["collect"])
    dag.add_task(
        "transmit",
        lambda ctx: {"sent": ctx["patient"] + ctx["condition"]},
        depends_on=["patient", "condition"],
    )

    assert dag.run()["status"] == "completed"
    assert dag.tasks["transmit"].result["sent"] == 3
