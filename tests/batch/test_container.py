"""
Tests for BundleServices wiring and the ``bundles`` command line.
"""

import pytest

from bundle_config.schema import RetrySettings
from bundle_kernel.domain.types import BundleStatus
from bundle_batch.cli import main
from bundle_batch.collaborators.loopback import loopback_collaborators
from bundle_batch.container import BundleServices, retry_policy_from_settings


class TestContainer:
    def test_retry_policy_from_settings(self):
        policy = retry_policy_from_settings(
            RetrySettings(max_attempts=5, backoff_base=0.1, backoff_max=2.0, jitter=0.0)
        )
        assert policy.max_attempts == 5
        assert policy.backoff_base == 0.1
        assert policy.backoff_max == 2.0
        assert policy.jitter == 0.0

    def test_wiring_uses_settings(self, services, settings):
        assert services.render_fanout.concurrency == settings.render_concurrency
        assert services.delivery_fanout.concurrency == settings.delivery_concurrency
        assert services.dispatcher.inline

    def test_from_settings_owns_engine(self, settings, clock):
        services = BundleServices.from_settings(
            settings, loopback_collaborators(), clock=clock, inline=True,
        )
        try:
            services.init_schema()
            services.admission_gate.admit(
                [{"bundle_id": "b-1", "contract_id": "C-1", "sequence_no": 1}]
            )
            token = services.collaborators.signer.issued["b-1"]
            services.continuation.resume(token, "SUCCESS", artifact_ref="loopback://signed")
            assert services.store.require_bundle("b-1").status is BundleStatus.DELIVERED
        finally:
            services.close()

    def test_init_schema_needs_engine(self, services):
        with pytest.raises(RuntimeError):
            services.init_schema()

    def test_pooled_dispatch_end_to_end(self, make_services):
        services = make_services(inline=False)
        report = services.admission_gate.admit(
            [
                {"bundle_id": f"b-{n}", "contract_id": f"C-{i}", "sequence_no": i}
                for n in range(3)
                for i in range(3)
            ]
        )
        assert len(report.started) == 3
        services.dispatcher.shutdown(wait=True)
        for n in range(3):
            assert services.store.require_bundle(f"b-{n}").is_waiting


class TestCli:
    def _run(self, capsys, *argv) -> tuple[int, str, str]:
        code = main(list(argv))
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    def test_full_lifecycle(self, tmp_path, capsys):
        db = f"sqlite:///{tmp_path / 'cli.db'}"
        batch = tmp_path / "nightly.csv"
        batch.write_text("bundle_id,contract_id,sequence_no\nb-1,C-2,2\nb-1,C-1,1\nb-1,,3\n")

        code, out, _ = self._run(capsys, "--database-url", db, "init-db")
        assert code == 0

        code, out, _ = self._run(capsys, "--database-url", db, "admit", str(batch))
        assert code == 0
        assert "admitted=2" in out
        assert "rejected=1" in out
        token = out.split("callback token: ")[1].split()[0]

        code, out, _ = self._run(
            capsys, "--database-url", db, "callback",
            "--token", token, "--outcome", "SUCCESS", "--artifact-ref", "loopback://signed",
        )
        assert code == 0
        assert '"status_code": 200' in out
        assert "b-1: DELIVERED" in out

        code, out, _ = self._run(capsys, "--database-url", db, "status", "b-1")
        assert code == 0
        assert '"status": "DELIVERED"' in out

        code, out, _ = self._run(capsys, "--database-url", db, "sweep")
        assert code == 0

    def test_unknown_bundle(self, tmp_path, capsys):
        db = f"sqlite:///{tmp_path / 'cli.db'}"
        code, _, err = self._run(capsys, "--database-url", db, "status", "missing")
        assert code == 1
        assert "BUNDLE_NOT_FOUND" in err

    def test_retry_deliveries_requires_partial_failed(self, tmp_path, capsys):
        db = f"sqlite:///{tmp_path / 'cli.db'}"
        batch = tmp_path / "b.jsonl"
        batch.write_text('{"bundle_id": "b-1", "contract_id": "C-1", "sequence_no": 1}\n')
        self._run(capsys, "--database-url", db, "admit", str(batch))

        code, _, err = self._run(capsys, "--database-url", db, "retry-deliveries", "b-1")
        assert code == 1
        assert "TRANSITION_CONFLICT" in err

    def test_bad_config(self, tmp_path, capsys):
        config = tmp_path / "bad.yaml"
        config.write_text("render_concurrency: 0\n")
        code, _, err = self._run(capsys, "--config", str(config), "init-db")
        assert code == 2
        assert "render_concurrency" in err
