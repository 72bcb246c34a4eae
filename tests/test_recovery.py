import pytest

from invoke import MockContext, Result

from conftest import PROJECT_VALUES, FakeCluster, console_text, kubectl_error, write_env
from xiops import config as xconfig
from xiops.errors import XiopsError
from xiops.events import EventVerdict, Verdict
from xiops.recovery import (
    MENU,
    CommandAdvisor,
    InteractivePolicy,
    RecoveryAction,
    RecoveryMenu,
    ScriptedPolicy,
)
from xiops.supervisor import OutcomeKind, RolloutOutcome

FAILURE = EventVerdict(Verdict.ERROR, pod_name="api-1", text="Events:\n  Warning  Failed  kubelet  Error: secret not found")
STILL_FAILING = EventVerdict(Verdict.ERROR, pod_name="api-2", text="Events:\n  Warning  BackOff  kubelet  Back-off")


class StubSupervisor:
    def __init__(self, outcomes: list[RolloutOutcome], calls: list[tuple]):
        self.outcomes = outcomes
        self.calls = calls

    def supervise(self, target, timeout=None) -> RolloutOutcome:
        self.calls.append(("supervise", target.deployment_name))
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


class StubAdvisor:
    def __init__(self, answer: str = "", error: Exception | None = None):
        self.answer = answer
        self.error = error
        self.asked: list[tuple[str, str]] = []

    def advise(self, pod_name: str, namespace: str) -> str:
        self.asked.append((pod_name, namespace))
        if self.error:
            raise self.error
        return self.answer


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


def make_menu(cluster, config, console, actions, outcomes=None, advisor=None):
    supervisor = StubSupervisor(outcomes or [RolloutOutcome.converged(12.0)], cluster.calls)
    return RecoveryMenu(
        cluster, config, supervisor, ScriptedPolicy(actions), advisor=advisor, console=console  # type: ignore[arg-type]
    )


def names(calls: list[tuple]) -> list[str]:
    return [call[0] for call in calls]


def test_menu_order():
    assert MENU == [
        RecoveryAction.REDEPLOY,
        RecoveryAction.RESYNC_SECRETS,
        RecoveryAction.RESYNC_CONFIG,
        RecoveryAction.ABORT,
    ]


def test_abort_touches_nothing(cluster, project_config, console, target):
    menu = make_menu(cluster, project_config, console, [RecoveryAction.ABORT])

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.kind is OutcomeKind.ERRORED
    assert outcome.aborted
    assert outcome.verdict == FAILURE
    assert cluster.calls == []
    assert "Aborted" in console_text(console)


def test_redeploy_restarts_then_supervises(cluster, project_config, console, target):
    menu = make_menu(cluster, project_config, console, [RecoveryAction.REDEPLOY])

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.ok
    assert names(cluster.calls) == ["rollout_restart", "supervise"]


def test_resync_secrets_applies_before_restart(cluster, project_config, console, target):
    menu = make_menu(cluster, project_config, console, [RecoveryAction.RESYNC_SECRETS])

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.ok
    assert names(cluster.calls) == ["apply_manifest", "rollout_restart", "supervise"]
    manifest = cluster.calls[0][1]
    assert "kind: SecretProviderClass" in manifest
    assert "api-spc" in manifest


def test_resync_config_applies_configmap(cluster, project_config, console, target):
    menu = make_menu(cluster, project_config, console, [RecoveryAction.RESYNC_CONFIG])

    menu.resolve(target, FAILURE, max_retries=3)

    assert names(cluster.calls) == ["apply_manifest", "rollout_restart", "supervise"]
    assert "kind: ConfigMap" in cluster.calls[0][1]


def test_errored_retry_returns_to_menu_with_new_evidence(cluster, project_config, console, target):
    menu = make_menu(
        cluster,
        project_config,
        console,
        [RecoveryAction.REDEPLOY, RecoveryAction.REDEPLOY],
        outcomes=[RolloutOutcome.errored(STILL_FAILING), RolloutOutcome.converged()],
    )

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.ok
    assert names(cluster.calls).count("supervise") == 2
    text = console_text(console)
    assert "Events for api-1" in text
    assert "Events for api-2" in text


def test_retry_limit_is_enforced(cluster, project_config, console, target):
    menu = make_menu(
        cluster,
        project_config,
        console,
        [RecoveryAction.REDEPLOY] * 5,
        outcomes=[RolloutOutcome.errored(STILL_FAILING)],
    )

    outcome = menu.resolve(target, FAILURE, max_retries=1)

    assert outcome.kind is OutcomeKind.ERRORED
    assert outcome.aborted
    assert outcome.verdict == STILL_FAILING
    assert names(cluster.calls).count("supervise") == 1
    assert "Retry limit reached" in console_text(console)


def test_zero_retries_only_shows_evidence(cluster, project_config, console, target):
    menu = make_menu(cluster, project_config, console, [RecoveryAction.REDEPLOY])

    outcome = menu.resolve(target, FAILURE, max_retries=0)

    assert outcome.aborted
    assert cluster.calls == []


def test_negative_retries_rejected(cluster, project_config, console, target):
    menu = make_menu(cluster, project_config, console, [])

    with pytest.raises(ValueError):
        menu.resolve(target, FAILURE, max_retries=-1)


def test_timeout_after_retry_is_returned(cluster, project_config, console, target):
    menu = make_menu(
        cluster,
        project_config,
        console,
        [RecoveryAction.REDEPLOY],
        outcomes=[RolloutOutcome.timed_out(300.0)],
    )

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.kind is OutcomeKind.TIMED_OUT


def test_failed_action_counts_as_a_retry(cluster, project_config, console, target):
    cluster.restart_error = kubectl_error("connection refused")
    menu = make_menu(cluster, project_config, console, [RecoveryAction.REDEPLOY] * 3)

    outcome = menu.resolve(target, FAILURE, max_retries=2)

    assert outcome.aborted
    assert cluster.restart_calls == 2
    assert "supervise" not in names(cluster.calls)
    assert "failed" in console_text(console)


def test_resync_without_key_vault_goes_back_to_menu(cluster, console, target, tmp_path):
    config = xconfig.load(write_env(tmp_path, {"SERVICE_NAME": "api", "NAMESPACE": "shop"}))
    menu = make_menu(
        cluster, config, console, [RecoveryAction.RESYNC_SECRETS, RecoveryAction.REDEPLOY]
    )

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.ok
    assert names(cluster.calls) == ["rollout_restart", "supervise"]
    assert "KEY_VAULT_NAME" in console_text(console)


def test_scripted_policy_aborts_when_exhausted():
    policy = ScriptedPolicy([RecoveryAction.REDEPLOY])

    assert policy.choose(FAILURE, 0) is RecoveryAction.REDEPLOY
    assert policy.choose(FAILURE, 1) is RecoveryAction.ABORT


def test_advisor_output_is_shown(cluster, project_config, console, target):
    advisor = StubAdvisor("Secret DB_PASSWORD is missing from kv-shop")
    menu = make_menu(cluster, project_config, console, [RecoveryAction.ABORT], advisor=advisor)

    menu.resolve(target, FAILURE, max_retries=3)

    assert advisor.asked == [("api-1", "shop")]
    assert "Secret DB_PASSWORD is missing from kv-shop" in console_text(console)


def test_advisor_failure_does_not_block_the_menu(cluster, project_config, console, target):
    advisor = StubAdvisor(error=RuntimeError("advisor crashed"))
    menu = make_menu(cluster, project_config, console, [RecoveryAction.REDEPLOY], advisor=advisor)

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.ok
    assert "Advisor unavailable" in console_text(console)


def test_long_evidence_is_truncated(cluster, project_config, console, target):
    text = "Events:\n" + "\n".join(f"  Warning  Failed  line {i}" for i in range(40))
    menu = make_menu(cluster, project_config, console, [RecoveryAction.ABORT])

    menu.resolve(target, EventVerdict(Verdict.ERROR, "api-1", text), max_retries=3)

    out = console_text(console)
    assert "line 23" in out
    assert "line 24" not in out
    assert "more lines" in out


def test_interactive_policy_maps_choice(monkeypatch, console):
    answers = iter(["2", "4"])
    monkeypatch.setattr("xiops.recovery.Prompt.ask", lambda *a, **kw: next(answers))
    policy = InteractivePolicy(console)

    assert policy.choose(FAILURE, 0) is RecoveryAction.RESYNC_SECRETS
    assert policy.choose(FAILURE, 1) is RecoveryAction.ABORT
    assert "Resync SPC from .env" in console_text(console)


@pytest.mark.parametrize(
    "action, kind",
    [(RecoveryAction.RESYNC_CONFIG, "ConfigMap"), (RecoveryAction.RESYNC_SECRETS, "SecretProviderClass")],
)
def test_resync_reads_env_edits_made_while_the_menu_was_open(
    cluster, project_config, console, target, action, kind
):
    menu = make_menu(cluster, project_config, console, [action])
    write_env(
        project_config.project_dir,
        {**PROJECT_VALUES, "DATABASE_HOST": "db.internal", "SENTRY_TOKEN": "tok"},
    )

    menu.resolve(target, FAILURE, max_retries=3)

    applied = cluster.calls[0][1]
    assert f"kind: {kind}" in applied
    expected = "DATABASE_HOST" if action is RecoveryAction.RESYNC_CONFIG else "SENTRY_TOKEN"
    assert expected in applied


def test_resync_with_deleted_env_goes_back_to_menu(cluster, project_config, console, target):
    menu = make_menu(
        cluster, project_config, console, [RecoveryAction.RESYNC_CONFIG, RecoveryAction.ABORT]
    )
    project_config.env_file.unlink()

    outcome = menu.resolve(target, FAILURE, max_retries=3)

    assert outcome.aborted
    assert cluster.calls == []
    assert ".env file not found" in console_text(console)


def test_command_advisor_quotes_pod_and_namespace():
    hint = "Container listens on 8000, service targets 8080"
    c = MockContext(run={"triage explain 'api-1 x' -n shop": Result(hint + "\n")})
    advisor = CommandAdvisor(c, "triage explain {pod} -n {namespace}")

    assert advisor.advise("api-1 x", "shop") == hint


def test_command_advisor_failure_raises():
    c = MockContext(run={"triage api-1": Result(stderr="boom", exited=2)})

    with pytest.raises(XiopsError, match="exited 2"):
        CommandAdvisor(c, "triage {pod}").advise("api-1", "shop")
