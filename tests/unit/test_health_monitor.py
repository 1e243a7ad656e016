import asyncio

from cdr.MANAGERS.health_monitor import HealthMonitor
from cdr.MODELS.lifecycle import HealthStatus
from cdr.MODELS.service_definition import HealthCheck, ServiceDefinition


def _service(name='db', **health):
    if not health:
        return ServiceDefinition(name=name, image='x')
    values = dict(test=['CMD', 'true'], interval=0.01, timeout=0.2, retries=2)
    values.update(health)
    return ServiceDefinition(name=name, image='x', health_check=HealthCheck(**values))


async def _watch(monitor, until, limit=2.0):
    """Runs the monitor until ``until()`` holds, then cancels it."""
    task = asyncio.create_task(monitor.run())
    deadline = asyncio.get_running_loop().time() + limit
    while not until() and asyncio.get_running_loop().time() < deadline:
        await asyncio.sleep(0.005)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


def _recorder():
    changes = []

    async def on_change(name, status):
        changes.append((name, status))
    return changes, on_change


def test_without_health_check_is_healthy_immediately(fake_runtime):
    changes, on_change = _recorder()
    runtime = fake_runtime()
    monitor = HealthMonitor(_service(), runtime, on_change=on_change)

    asyncio.run(monitor.run())

    assert changes == [('db', HealthStatus.HEALTHY)]
    assert runtime.probes['db'] == 0


def test_becomes_healthy_after_passing_probe(fake_runtime):
    changes, on_change = _recorder()
    runtime = fake_runtime(healthy_after={'db': 1})
    monitor = HealthMonitor(_service(retries=3), runtime, on_change=on_change)

    asyncio.run(_watch(monitor, lambda: monitor.health.status == HealthStatus.HEALTHY))

    assert changes == [('db', HealthStatus.HEALTHY)]
    assert runtime.probes['db'] >= 2
    assert monitor.health.failing_streak == 0


def test_unhealthy_after_consecutive_failures(fake_runtime):
    changes, on_change = _recorder()
    runtime = fake_runtime(never_healthy={'db'})
    monitor = HealthMonitor(_service(retries=2), runtime, on_change=on_change)

    asyncio.run(_watch(monitor, lambda: monitor.health.status == HealthStatus.UNHEALTHY))

    assert changes == [('db', HealthStatus.UNHEALTHY)]
    assert monitor.health.failing_streak >= 2
    assert monitor.health.last_output == "health check failed"


def test_recovers_after_being_unhealthy(fake_runtime):
    changes, on_change = _recorder()
    runtime = fake_runtime(healthy_after={'db': 2})
    monitor = HealthMonitor(_service(retries=2), runtime, on_change=on_change)

    asyncio.run(_watch(monitor, lambda: len(changes) >= 2))

    assert changes == [('db', HealthStatus.UNHEALTHY), ('db', HealthStatus.HEALTHY)]


def test_failures_during_start_period_are_not_counted(fake_runtime):
    changes, on_change = _recorder()
    runtime = fake_runtime(never_healthy={'db'})
    monitor = HealthMonitor(_service(retries=1, start_period=30), runtime, on_change=on_change)

    asyncio.run(_watch(monitor, lambda: runtime.probes['db'] >= 5))

    assert changes == []
    assert monitor.health.failing_streak == 0
    assert monitor.health.status == HealthStatus.STARTING


def test_success_during_start_period_counts(fake_runtime):
    runtime = fake_runtime()
    monitor = HealthMonitor(_service(start_period=30), runtime)

    asyncio.run(_watch(monitor, lambda: monitor.health.status == HealthStatus.HEALTHY))

    assert monitor.health.status == HealthStatus.HEALTHY


def test_probe_timeout_counts_as_failure(fake_runtime):
    class SlowRuntime(fake_runtime):
        async def probe(self, service):
            self.probes[service.name] += 1
            await asyncio.sleep(1)
            return True

    changes, on_change = _recorder()
    runtime = SlowRuntime()
    monitor = HealthMonitor(_service(timeout=0.01, retries=1), runtime, on_change=on_change)

    asyncio.run(_watch(monitor, lambda: monitor.health.status == HealthStatus.UNHEALTHY))

    assert changes == [('db', HealthStatus.UNHEALTHY)]
    assert "timed out" in monitor.health.last_output
    assert monitor.health.last_check is not None


def test_probe_error_counts_as_failure(fake_runtime, caplog):
    class BrokenRuntime(fake_runtime):
        async def probe(self, service):
            self.probes[service.name] += 1
            raise TypeError("missing command")

    changes, on_change = _recorder()
    monitor = HealthMonitor(_service(retries=1), BrokenRuntime(), on_change=on_change)

    asyncio.run(_watch(monitor, lambda: monitor.health.status == HealthStatus.UNHEALTHY))

    assert changes == [('db', HealthStatus.UNHEALTHY)]
    assert monitor.health.failing_streak >= 1
    assert "missing command" in monitor.health.last_output
    assert "unexpected error" in caplog.text
