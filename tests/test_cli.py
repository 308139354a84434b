"""Tests for the vdbctl CLI."""

from pathlib import Path

import yaml
from click.testing import CliRunner

from cluster_mock import SAMPLE_DDL
from vdb_operator.cli import cli
from vdb_operator.digest import compute_spec_digest
from vdb_operator.models import VirtualDatabaseSpec


def _write(tmp_path: Path, status: dict | None = None, **spec: object) -> Path:
    body = {
        "apiVersion": "teiid.io/v1alpha1",
        "kind": "VirtualDatabase",
        "metadata": {"name": "portfolio", "namespace": "dev"},
        "spec": spec or {"build": {"source": {"ddl": SAMPLE_DDL}}},
    }
    if status is not None:
        body["status"] = status
    path = tmp_path / "vdb.yaml"
    path.write_text(yaml.safe_dump(body))
    return path


class TestValidate:
    """Tests for the validate command."""

    def test_valid(self, tmp_path: Path) -> None:
        """Test that a buildable manifest validates."""
        result = CliRunner().invoke(cli, ["validate", str(_write(tmp_path))])

        assert result.exit_code == 0
        assert "portfolio is valid" in result.output

    def test_no_source(self, tmp_path: Path) -> None:
        """Test that a manifest without build inputs fails."""
        result = CliRunner().invoke(cli, ["validate", str(_write(tmp_path, replicas=2))])

        assert result.exit_code == 1
        assert "No build source defined" in result.output

    def test_unsupported_runtime(self, tmp_path: Path) -> None:
        """Test that semantic problems are listed."""
        path = _write(tmp_path, runtime={"type": "quarkus"}, build={"source": {"ddl": SAMPLE_DDL}})
        result = CliRunner().invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "runtime type must be springboot" in result.output

    def test_invalid(self, tmp_path: Path) -> None:
        """Test that schema errors are reported."""
        path = _write(tmp_path, replicas=-1, build={"source": {"ddl": SAMPLE_DDL}})
        result = CliRunner().invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "spec.replicas" in result.output


class TestDigest:
    """Tests for the digest command."""

    def test_digest(self, tmp_path: Path) -> None:
        """Test that the printed digest matches the library."""
        spec = VirtualDatabaseSpec.model_validate({"build": {"source": {"ddl": SAMPLE_DDL}}})
        result = CliRunner().invoke(
            cli, ["digest", str(_write(tmp_path)), "--operator-version", "1.0"]
        )

        assert result.exit_code == 0
        assert result.output.strip() == compute_spec_digest(spec, "1.0")


class TestPlan:
    """Tests for the plan command."""

    def test_new_resource(self, tmp_path: Path) -> None:
        """Test the plan for a resource never reconciled."""
        result = CliRunner().invoke(cli, ["plan", str(_write(tmp_path))])

        assert result.exit_code == 0
        assert "Phase:   <initial>" in result.output
        assert "Next:    initialize" in result.output

    def test_running(self, tmp_path: Path) -> None:
        """Test the plan for a converged resource."""
        spec = VirtualDatabaseSpec.model_validate({"build": {"source": {"ddl": SAMPLE_DDL}}})
        status = {"phase": "Running", "digest": compute_spec_digest(spec, "dev"), "version": "2"}
        result = CliRunner().invoke(
            cli, ["plan", str(_write(tmp_path, status=status)), "--operator-version", "dev"]
        )

        assert result.exit_code == 0
        assert "Version: 2" in result.output
        assert "Next:    update" in result.output

    def test_redeploy(self, tmp_path: Path) -> None:
        """Test that a stale digest plans a redeploy."""
        status = {"phase": "Running", "digest": "vstale"}
        result = CliRunner().invoke(cli, ["plan", str(_write(tmp_path, status=status))])

        assert result.exit_code == 0
        assert "redeploy" in result.output

    def test_parked(self, tmp_path: Path) -> None:
        """Test that a parked resource waits for a spec change."""
        status = {"phase": "Error", "failure": "boom"}
        result = CliRunner().invoke(cli, ["plan", str(_write(tmp_path, status=status))])

        assert result.exit_code == 0
        assert "waiting for a spec change" in result.output
        assert "Failure: boom" in result.output


class TestPhases:
    """Tests for the phases command."""

    def test_lists_every_phase(self) -> None:
        """Test that each phase is printed with its owner."""
        result = CliRunner().invoke(cli, ["phases"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].split() == ["<initial>", "initialize"]
        assert any(line.startswith("Running") and line.endswith("update") for line in lines)
        assert any(line.startswith("Error") and line.endswith("-") for line in lines)


class TestVersion:
    """Tests for the version option."""

    def test_version(self) -> None:
        """Test the version output."""
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "vdbctl" in result.output
