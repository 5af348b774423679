from __future__ import annotations

import threading
import time

import pytest

from container_config import (
    ConfigError,
    ContainerConfig,
    MultiError,
    NoSuchContainerError,
    StackError,
    StartupError,
)
from container_docker import DockerContainer
from container_kubernetes import KubernetesContainer
from container_script import ScriptContainer
from container_stack import Stack, StackState, load_stack
from tests.dummy_container import DummyContainer


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def run_in_background(stack: Stack, interrupt=None):
    errors = []

    def _run():
        try:
            stack.run(interrupt)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    return t, errors


def dummy_stack(*names: str, **kwargs) -> Stack:
    return Stack(
        id="s1",
        engine="dummy://",
        containers=[ContainerConfig(name=n) for n in names],
        **kwargs,
    )


# ---------- validation ----------------------------------------------------- #
def test_engine_resolution():
    stack = Stack(id="s1", containers=[
        ContainerConfig(name="a", image="nginx", engine="docker://"),
        ContainerConfig(name="b", image="nginx", engine="kubernetes://myns"),
        ContainerConfig(name="c", engine="shell://hello"),
    ], scripts={"hello": "echo hi"})
    stack.validate()

    assert isinstance(stack.container("a"), DockerContainer)
    k8s = stack.container("b")
    assert isinstance(k8s, KubernetesContainer)
    assert k8s.namespace == "myns"
    assert k8s.config.namespace == "myns"
    assert isinstance(stack.container("c"), ScriptContainer)


def test_default_engine_is_docker():
    stack = Stack(id="s1", containers=[ContainerConfig(name="a", image="nginx")])
    stack.validate()
    assert isinstance(stack.container("a"), DockerContainer)


def test_unknown_engine_fails_validation():
    stack = Stack(containers=[ContainerConfig(name="a", image="x", engine="carrierpigeon://")])
    with pytest.raises(ConfigError, match="carrierpigeon"):
        stack.validate()
    assert stack.state is StackState.UNVALIDATED


def test_container_config_errors_fail_validation():
    stack = Stack(containers=[ContainerConfig(name="a", engine="docker://")])
    with pytest.raises(ConfigError, match="image"):
        stack.validate()


def test_auto_generated_names():
    stack = Stack(id="abc", engine="dummy://", containers=[ContainerConfig(), ContainerConfig()])
    stack.validate()
    assert stack.container_names() == ["abc-container-0", "abc-container-1"]
    assert stack.container("abc-container-1").config.name == "abc-container-1"


def test_missing_id_is_generated():
    stack = Stack(engine="dummy://", containers=[ContainerConfig()])
    stack.validate()
    assert stack.id
    assert stack.container_names() == [f"{stack.id}-container-0"]


def test_duplicate_names_fail_validation():
    stack = dummy_stack("web", "web")
    with pytest.raises(ConfigError, match="duplicate"):
        stack.validate()


def test_validate_is_idempotent():
    stack = dummy_stack("web", "db")
    stack.validate()
    first = {n: stack.container(n) for n in stack.container_names()}
    stack.validate()
    assert {n: stack.container(n) for n in stack.container_names()} == first
    assert stack.state is StackState.VALIDATED


def test_container_config_is_copied():
    declared = ContainerConfig(name="web")
    stack = Stack(id="s1", engine="dummy://", containers=[declared])
    stack.validate()
    assert stack.container("web").config is not declared
    assert stack.container("web").config == declared


def test_script_lookup():
    stack = Stack(scripts={"hello": "  echo hi \n", "blank": "   "})
    assert stack.script("hello") == "echo hi"
    with pytest.raises(ConfigError, match="unknown script"):
        stack.script("blank")
    with pytest.raises(ConfigError, match="unknown script"):
        stack.script("missing")


def test_unknown_script_fails_validation():
    stack = Stack(containers=[ContainerConfig(name="x", engine="shell://missing")])
    with pytest.raises(ConfigError, match="missing"):
        stack.validate()


def test_load_stack(tmp_path):
    path = tmp_path / "stack.yaml"
    path.write_text(
        "name: demo\n"
        "engine: dummy://\n"
        "timeout: 5s\n"
        "scripts:\n"
        "  hello: echo hi\n"
        "containers:\n"
        "  - name: web\n"
        "    image: nginx\n"
        "    cmd: [nginx, -g, 'daemon off;']\n"
    )
    stack = load_stack(path)
    assert stack.name == "demo"
    assert stack.start_timeout == "5s"
    assert stack.scripts == {"hello": "echo hi"}
    assert stack.containers[0].cmd == ["nginx", "-g", "daemon off;"]


# ---------- run / stop ----------------------------------------------------- #
def test_run_and_stop(fast_timings):
    stack = dummy_stack("web", "db")
    t, errors = run_in_background(stack)

    assert wait_for(lambda: stack.states == {"web": True, "db": True})
    assert stack.state is StackState.RUNNING
    assert stack.has_running_containers()
    assert stack.addresses["web"] == "127.0.0.1:8080"
    assert stack.container("web").config.running

    started = time.monotonic()
    stack.stop(timeout=5)
    assert time.monotonic() - started < 5

    t.join(5)
    assert not t.is_alive()
    assert errors == []
    assert not stack.has_running_containers()
    assert stack.state is StackState.STOPPED
    assert all(not stack.container(n).is_running() for n in stack.container_names())
    assert stack.container("web").tail().closed


def test_monitor_loop_observes_crash(fast_timings):
    stack = dummy_stack("web")
    t, _ = run_in_background(stack)
    assert wait_for(lambda: stack.states.get("web") is True)

    stack.container("web").crash()
    assert wait_for(lambda: stack.states.get("web") is False)
    assert not stack.has_running_containers()
    assert stack.container("web").config.running is False

    stack.stop(timeout=5)
    t.join(5)


def test_crashed_container_is_not_restarted_automatically(fast_timings):
    stack = Stack(id="s1", engine="dummy://",
                  containers=[ContainerConfig(name="web", restart_interval="0.1")])
    t, _ = run_in_background(stack)
    web = stack.container("web")
    assert wait_for(lambda: stack.states.get("web") is True)

    web.crash()
    assert wait_for(lambda: stack.states.get("web") is False)
    time.sleep(0.3)
    assert web.starts == 1
    assert stack.states["web"] is False

    stack.stop(timeout=5)
    t.join(5)


def test_restart_container_while_monitored_starts_once(fast_timings):
    stack = Stack(id="s1", engine="slowstop://",
                  containers=[ContainerConfig(name="web", restart_interval="0.1")])
    t, _ = run_in_background(stack)
    web = stack.container("web")
    assert wait_for(lambda: stack.states.get("web") is True)

    stack.restart_container("web")
    time.sleep(1.0)
    assert web.events == ["start", "stop", "start"]
    assert web.starts == 2
    assert wait_for(lambda: stack.states.get("web") is True)

    web.stop_delay = 0.0
    stack.stop(timeout=5)
    t.join(5)


def test_start_failure_is_raised(fast_timings):
    stack = Stack(id="s1", containers=[
        ContainerConfig(name="ok", engine="dummy://"),
        ContainerConfig(name="bad", engine="broken://"),
    ])
    with pytest.raises(StartupError, match="refused to start"):
        stack.run()

    # partial start is left running for the caller to clean up
    assert stack.state is StackState.VALIDATED
    assert stack.container("ok").is_running()

    stack.container("bad").stop_error = None
    stack.stop()
    assert not stack.container("ok").is_running()
    assert stack.state is StackState.STOPPED


def test_container_without_address_did_not_stay_running(fast_timings):
    stack = Stack(id="s1", containers=[ContainerConfig(name="quiet", engine="noaddr://")])
    with pytest.raises(StartupError, match="did not stay running"):
        stack.run()


def test_start_timeout(fast_timings):
    stack = Stack(id="s1", start_timeout="0.2s",
                  containers=[ContainerConfig(name="slow", engine="slow://")])
    started = time.monotonic()
    with pytest.raises(StartupError, match="did not respond"):
        stack.run()
    assert time.monotonic() - started < 1.5


def test_interrupt_aborts_start(fast_timings):
    stack = Stack(id="s1", containers=[ContainerConfig(name="quiet", engine="noaddr://")])
    interrupt = threading.Event()
    interrupt.set()

    with pytest.raises(StartupError, match="interrupted"):
        stack.run(interrupt)
    assert not stack.container("quiet").is_running()


def test_interrupts_are_per_stack(fast_timings):
    interrupted = threading.Event()
    interrupted.set()
    a = Stack(id="a", containers=[ContainerConfig(name="x", engine="noaddr://")])
    b = dummy_stack("web")

    with pytest.raises(StartupError):
        a.run(interrupted)

    t, errors = run_in_background(b, threading.Event())
    assert wait_for(lambda: b.states.get("web") is True)
    b.stop(timeout=5)
    t.join(5)
    assert errors == []


def test_stop_errors_are_aggregated(fast_timings):
    stack = dummy_stack("a", "b", "c")
    t, errors = run_in_background(stack)
    assert wait_for(lambda: len(stack.states) == 3 and all(stack.states.values()))

    stack.container("a").stop_error = StackError("a failed")
    stack.container("c").stop_error = StackError("c failed")

    with pytest.raises(MultiError) as exc:
        stack.stop(timeout=5)

    assert {str(e) for e in exc.value.errors} == {"a failed", "c failed"}
    assert stack.container("b").stops == 1
    assert not stack.has_running_containers()
    t.join(5)
    assert isinstance(errors[0], MultiError)


def test_stop_before_run_stops_nothing():
    stack = dummy_stack("web")
    stack.validate()
    stack.stop()
    assert stack.container("web").stops == 1
    assert stack.state is StackState.STOPPED


def test_prestart_runs_before_containers(fast_timings):
    stack = Stack(id="s1", engine="dummy://",
                  prestart_containers=[ContainerConfig(name="migrate")],
                  containers=[ContainerConfig(name="web")])
    stack.validate()
    migrate = stack._prestart["migrate"]
    # the prestart container "finishes" shortly after it starts
    threading.Timer(0.1, migrate.crash).start()

    t, errors = run_in_background(stack)
    assert wait_for(lambda: stack.states.get("web") is True)
    assert migrate.starts == 1
    assert not migrate.is_running()
    assert "migrate" not in stack.container_names()

    stack.stop(timeout=5)
    t.join(5)
    assert errors == []


def test_prestart_names_cannot_collide():
    stack = Stack(id="s1", engine="dummy://",
                  prestart_containers=[ContainerConfig(name="web")],
                  containers=[ContainerConfig(name="web")])
    with pytest.raises(ConfigError, match="duplicate"):
        stack.validate()


# ---------- single-container operations ----------------------------------- #
def test_unknown_container_operations():
    stack = dummy_stack("web")
    stack.validate()
    for op in (stack.start_container, stack.stop_container, stack.restart_container):
        with pytest.raises(NoSuchContainerError, match="no such container 'nope'"):
            op("nope")
    assert stack.wait_for_container_stop("nope") is False
    assert stack.container("nope") is None


def test_stop_container_then_wait(fast_timings):
    stack = dummy_stack("web")
    t, _ = run_in_background(stack)
    assert wait_for(lambda: stack.addresses.get("web"))

    stack.stop_container("web")
    assert stack.wait_for_container_stop("web", timeout=3) is True
    assert wait_for(lambda: stack.states.get("web") is False)

    stack.start_container("web")
    assert wait_for(lambda: stack.states.get("web") is True)

    stack.stop(timeout=5)
    t.join(5)


def test_restart_container_goes_through_stopped(fast_timings):
    stack = dummy_stack("web")
    t, _ = run_in_background(stack)
    web = stack.container("web")
    assert wait_for(lambda: web.is_running())

    stack.restart_container("web")
    assert web.is_running()
    assert web.events == ["start", "stop", "start"]
    assert web.starts == 2

    stack.stop(timeout=5)
    t.join(5)


def test_wait_for_container_stop_times_out(fast_timings):
    stack = dummy_stack("web")
    stack.validate()
    stack.start_container("web")
    assert stack.wait_for_container_stop("web", timeout=0.05) is False
    stack.stop_container("web")
    assert stack.wait_for_container_stop("web", timeout=0.05) is True


def test_run_twice_is_rejected(fast_timings):
    stack = dummy_stack("web")
    t, _ = run_in_background(stack)
    assert wait_for(lambda: stack.states.get("web") is True)
    with pytest.raises(StackError, match="already running"):
        stack.run()
    stack.stop(timeout=5)
    t.join(5)


def test_describe(fast_timings):
    stack = dummy_stack("web", name="demo")
    t, _ = run_in_background(stack)
    assert wait_for(lambda: stack.states.get("web") is True)

    desc = stack.describe()
    assert desc["name"] == "demo"
    assert desc["state"] == "running"
    assert desc["containers"] == [{"name": "web", "running": True, "address": "127.0.0.1:8080"}]

    stack.stop(timeout=5)
    t.join(5)


def test_wait_for_all_to_stop(fast_timings):
    stack = dummy_stack("web", "db")
    t, _ = run_in_background(stack)
    assert wait_for(lambda: stack.has_running_containers())
    assert stack.wait_for_all_to_stop(timeout=0.1) is False

    stack.container("web").crash()
    stack.container("db").crash()
    assert stack.wait_for_all_to_stop(timeout=5) is True

    stack.stop(timeout=5)
    t.join(5)


def test_stop_right_after_begin_is_not_lost(fast_timings):
    stack = dummy_stack("web")
    stack.begin()

    stopper = threading.Thread(target=stack.stop, kwargs={"timeout": 5}, daemon=True)
    stopper.start()
    t, _ = run_in_background(stack)

    stopper.join(5)
    t.join(5)
    assert not stopper.is_alive()
    assert not t.is_alive()
    assert stack.state is StackState.STOPPED
    assert not stack.container("web").is_running()


def test_stop_before_worker_runs(fast_timings):
    stack = dummy_stack("web")
    stack.begin()
    stopper = threading.Thread(target=stack.stop, kwargs={"timeout": 5}, daemon=True)
    stopper.start()
    time.sleep(0.05)

    stack.run()
    stopper.join(5)
    assert not stopper.is_alive()
    assert stack.container("web").starts == 0
    assert stack.state is StackState.STOPPED


def test_begin_twice_is_rejected(fast_timings):
    stack = dummy_stack("web")
    stack.begin()
    with pytest.raises(StackError, match="already running"):
        stack.begin()

    t, _ = run_in_background(stack)
    assert wait_for(lambda: stack.states.get("web") is True)
    stack.stop(timeout=5)
    t.join(5)
    assert stack.container("web").starts == 1
