from pathlib import Path

import pytest

SRC = Path(__file__).resolve().parents[1] / "src" / "kubestrap"
HEADER = ["# Copyright 2026 Kezie Iwueke", "# SPDX-License-Identifier: Apache-2.0"]


@pytest.mark.parametrize("path", sorted(SRC.rglob("*.py")), ids=lambda p: str(p.relative_to(SRC)))
def test_source_file_has_license_header(path: Path):
    assert path.read_text().splitlines()[:2] == HEADER
