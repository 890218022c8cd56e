import importlib


def test_import_package():
    pkg = importlib.import_module("ENScalPy")
    assert hasattr(pkg, "__version__")


def test_public_api():
    pkg = importlib.import_module("ENScalPy")
    for name in pkg.__all__:
        assert hasattr(pkg, name), name
