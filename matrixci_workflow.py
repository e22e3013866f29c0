# matrixci_workflow.py
# CI for matrixci itself: lint, test across OS x Python, build, sign the
# Windows wheel on pushes to the main repository.
from __future__ import annotations

from matrixci.dsl import job, matrix, sh, uses, wf

RELEASE_LEG = (
    "matrix.os == 'windows-latest' && matrix.python == '3.12'"
    " && github.event_name == 'push' && github.repository == 'matrixci/matrixci'"
)


def workflow():
    return wf(
        job(
            "lint",
            sh("Install ruff", "python -m pip install ruff"),
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
        ),
        job(
            "build",
            sh("Build sdist and wheel", "python -m pip wheel --no-deps -w dist ."),
            needs=["lint"],
        ),
        job(
            "test",
            sh("Install", "python -m pip install -e .[test] pytest-cov"),
            sh(
                "Run pytest",
                "pytest -q --cov=matrixci --cov-report=xml:coverage.xml",
                env={"PYTHONWARNINGS": "${{ matrix.pywarnings || '' }}"},
            ),
            sh(
                "Build wheel [Windows]",
                "python -m pip wheel --no-deps -w dist .",
                if_=RELEASE_LEG,
                continue_on_error=True,
            ),
            uses(
                "Sign | Upload wheel [Windows]",
                "upload-artifact@v1",
                id="unsigned-artifacts",
                with_={"name": "unsigned-wheel", "path": "dist/*.whl"},
                if_=RELEASE_LEG,
                continue_on_error=True,
            ),
            uses(
                "Sign | Sign [Windows]",
                "sign-artifact@v1",
                with_={
                    "api-token": "${{ secrets.SIGNING_API_TOKEN }}",
                    "organization-id": "${{ vars.SIGNING_ORGANIZATION_ID }}",
                    "project-slug": "matrixci",
                    "github-artifact-id": "${{ steps.unsigned-artifacts.outputs.artifact-id }}",
                    "signing-policy-slug": "test-signing",
                    "wait-for-completion": "true",
                    "output-artifact-directory": "dist/signed",
                },
                if_=RELEASE_LEG,
                continue_on_error=True,
            ),
            uses(
                "Upload coverage",
                "upload-coverage@v1",
                with_={"token": "${{ secrets.COVERAGE_TOKEN }}", "files": "coverage.xml"},
                if_="github.repository == 'matrixci/matrixci'",
            ),
            needs=["lint"],
            runs_on="${{ matrix.os }}",
            matrix=matrix(
                os=["ubuntu-latest", "macOS-latest", "windows-latest"],
                python=["3.11", "3.12"],
                include=[{"os": "windows-latest", "pywarnings": "error::DeprecationWarning"}],
            ),
            fail_fast=False,
        ),
        name="Main workflow",
        env={"PIP_DISABLE_PIP_VERSION_CHECK": "1"},
    )
