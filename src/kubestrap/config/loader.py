# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/loader.py

import os
import yaml
from pathlib import Path
from .models import KubestrapConfig


def load_config(path: str | Path) -> KubestrapConfig:
    raw = Path(path).read_text()

    # expand environment variables like ${KUBESPRAY_DIR}
    expanded = os.path.expandvars(raw)

    data = yaml.safe_load(expanded) or {}
    return KubestrapConfig.model_validate(data)
