# test_imports.py
import importlib

import pytest


@pytest.mark.parametrize("module", [
    "invoice_billing.cli.main",
    "invoice_billing.config.loader",
    "invoice_billing.core.billing",
    "invoice_billing.core.scheduler",
    "invoice_billing.demo.seed_demo_data",
    "invoice_billing.storage.repository",
])
def test_module_imports(module):
    assert importlib.import_module(module) is not None
