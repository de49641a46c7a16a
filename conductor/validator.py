"""Default OutputValidator: checks a stage's outputs against its configured manifest.

For code-producing stages it also counts source files, detects a project
manifest and runs the build and test commands. The pipeline only interprets
the pass/fail result.
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from config.config_loader import AppConfig, StageConfig
from conductor.interfaces import OutputValidator
from conductor.models import ValidationCheck, ValidationSummary

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_SEC = 600

SOURCE_EXTENSIONS = frozenset({
    ".ts", ".tsx", ".js", ".jsx", ".cs", ".py", ".go", ".rs", ".java",
    ".vue", ".svelte", ".rb", ".php", ".swift", ".kt", ".scala",
})

# Never counted as project source. state/ holds checkpoint copies.
IGNORED_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", ".next", "__pycache__", "target",
    "bin", "obj", ".cache", "coverage", ".venv", "venv", "state", "stages",
})


@dataclass(frozen=True)
class ProjectType:
    name: str
    manifest: str              # file name, or "*.ext" glob
    build_command: str
    test_command: str


PROJECT_TYPES = (
    ProjectType("node", "package.json", "npm run build", "npm test"),
    ProjectType("dotnet", "*.csproj", "dotnet build", "dotnet test"),
    ProjectType("python", "pyproject.toml", "python -m compileall -q .", "pytest"),
    ProjectType("rust", "Cargo.toml", "cargo build", "cargo test"),
    ProjectType("go", "go.mod", "go build ./...", "go test ./..."),
)


def detect_project_type(project_root: Path) -> ProjectType | None:
    for project_type in PROJECT_TYPES:
        if project_type.manifest.startswith("*"):
            if any(project_root.glob(project_type.manifest)):
                return project_type
        elif (project_root / project_type.manifest).is_file():
            return project_type
    return None


def count_source_files(project_root: Path) -> int:
    count = 0
    for entry in project_root.iterdir():
        if entry.is_dir():
            if entry.name not in IGNORED_DIRS:
                count += count_source_files(entry)
        elif entry.suffix.lower() in SOURCE_EXTENSIONS:
            count += 1
    return count


def exit_code(summary: ValidationSummary) -> int:
    """CLI convention: 0 all pass, 1 any critical failure, 2 only high/medium findings."""
    failed = summary.failed_checks
    if not failed:
        return 0
    if any(c.severity == "critical" for c in failed):
        return 1
    return 2


class ManifestValidator(OutputValidator):
    """Validates outputs under stages/<id>/outputs/ for one pipeline version."""

    def __init__(self, project_root: Path, config: AppConfig, pipeline_version: str | None = None) -> None:
        self._root = Path(project_root)
        self._config = config
        self._version = pipeline_version

    def validate(self, stage_id: str) -> ValidationSummary:
        stage = self._config.stage(stage_id, self._version)
        outputs_dir = self._root / "stages" / stage.id / "outputs"
        checks: list[ValidationCheck] = []

        for name in stage.required_outputs:
            checks.append(self._check_output(outputs_dir / name, name))

        for name, headings in stage.required_sections.items():
            checks.extend(self._check_sections(outputs_dir / name, name, headings))

        if stage.code_producing:
            checks.extend(self._check_code(stage))

        summary = ValidationSummary(stage_id=stage.id, checks=checks)
        logger.info(
            "Validation of %s: %d/%d checks passed%s",
            stage.id,
            len(checks) - len(summary.failed_checks),
            len(checks),
            "" if summary.required_checks_passed else " (required checks failing)",
        )
        return summary

    @staticmethod
    def _check_output(path: Path, name: str) -> ValidationCheck:
        if not path.is_file():
            return ValidationCheck(f"output {name}", False, f"Missing required output: {name}")
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return ValidationCheck(f"output {name}", False, f"Required output is not valid UTF-8: {name}")
        if not text.strip():
            return ValidationCheck(f"output {name}", False, f"Required output is empty: {name}")
        return ValidationCheck(f"output {name}", True, f"{name} present")

    @staticmethod
    def _check_sections(path: Path, name: str, headings: list[str]) -> list[ValidationCheck]:
        text = path.read_text(encoding="utf-8", errors="replace") if path.is_file() else ""
        lines = {line.strip() for line in text.splitlines()}
        return [
            ValidationCheck(
                f"section {name} {heading}",
                heading in lines,
                f"{name} has section '{heading}'" if heading in lines else f"{name} lacks section '{heading}'",
                severity="high",
            )
            for heading in headings
        ]

    def _check_code(self, stage: StageConfig) -> list[ValidationCheck]:
        checks: list[ValidationCheck] = []

        count = count_source_files(self._root)
        enough = count >= stage.min_source_files
        checks.append(ValidationCheck(
            "source file count",
            enough,
            f"Found {count} source files ({'>=' if enough else '<'} {stage.min_source_files} required)",
        ))

        project_type = detect_project_type(self._root)
        checks.append(ValidationCheck(
            "project manifest",
            project_type is not None,
            f"Detected {project_type.name} project ({project_type.manifest})" if project_type
            else "No project manifest found (package.json, *.csproj, pyproject.toml, Cargo.toml, go.mod)",
        ))
        if project_type is None:
            return checks

        checks.append(self._run_command("build", stage.build_command or project_type.build_command))
        checks.append(self._run_command("test", stage.test_command or project_type.test_command))
        return checks

    def _run_command(self, label: str, command: str) -> ValidationCheck:
        logger.info("Running %s command: %s", label, command)
        try:
            result = subprocess.run(
                shlex.split(command),
                cwd=self._root,
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT_SEC,
            )
        except FileNotFoundError:
            return ValidationCheck(
                label, False, f"Command not available: {command}", required=False, severity="medium",
            )
        except subprocess.TimeoutExpired:
            return ValidationCheck(label, False, f"{command} timed out after {COMMAND_TIMEOUT_SEC}s")

        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip().splitlines()[-5:]
            return ValidationCheck(
                label, False, f"{command} exited {result.returncode}: " + " | ".join(tail),
            )
        return ValidationCheck(label, True, f"{command} succeeded")
