import pytest

from livebridge.dispatcher.core.exceptions import FunctionNotFoundError
from livebridge.dispatcher.models.function import (
    DEFAULT_RUNTIME,
    DEFAULT_TIMEOUT,
    FunctionDefinition,
    derive_function_id,
)
from livebridge.dispatcher.services.function_registry import FunctionRegistry


@pytest.fixture
def functions_yaml():
    return """
defaults:
  timeout: 30
  environment:
    GLOBAL_ENV: "true"
    STAGE: default

functions:
  fn-a:
    handler: app.handler
    runtime: python3.11
    srcPath: functions/a/
    environment:
      STAGE: ${LIVEBRIDGE_TEST_STAGE}
  fn-b:
    handler: src/index.handler
    runtime: nodejs18.x
    timeout: 5
    bundle:
      minify: true
      externalModules: [aws-sdk]
      copyFiles:
        - from: assets
          to: static
  fn-disabled:
    handler: app.handler
    runtime: python3.11
    srcPath: functions/disabled
    enableLiveDev: false
"""


@pytest.fixture
def registry(tmp_path, functions_yaml, monkeypatch):
    monkeypatch.setenv("LIVEBRIDGE_TEST_STAGE", "dev")
    path = tmp_path / "functions.yml"
    path.write_text(functions_yaml, encoding="utf-8")
    registry = FunctionRegistry(str(path))
    registry.load_functions_config()
    return registry


def test_register_and_lookup(python_function):
    registry = FunctionRegistry()
    definition = python_function("fn-a")

    registry.register(definition)

    assert registry.lookup("fn-a") is definition
    assert registry.get("fn-a") is definition
    assert len(registry) == 1


def test_lookup_unknown_raises():
    registry = FunctionRegistry()

    with pytest.raises(FunctionNotFoundError) as exc_info:
        registry.lookup("missing")

    assert exc_info.value.function_id == "missing"
    assert registry.get("missing") is None


def test_register_replaces_existing_entry(python_function):
    registry = FunctionRegistry()
    registry.register(python_function("fn-a", timeout=3))
    registry.register(python_function("fn-a", timeout=9))

    assert registry.lookup("fn-a").timeout == 9
    assert len(registry) == 1


def test_list_definitions_sorted(python_function):
    registry = FunctionRegistry()
    for function_id in ("fn-c", "fn-a", "fn-b"):
        registry.register(python_function(function_id))

    assert [d.id for d in registry.list_definitions()] == ["fn-a", "fn-b", "fn-c"]
    assert registry.list_ids() == ["fn-a", "fn-b", "fn-c"]


def test_load_merges_defaults_and_substitutes_env(registry):
    fn_a = registry.lookup("fn-a")

    assert fn_a.environment == {"GLOBAL_ENV": "true", "STAGE": "dev"}
    assert fn_a.timeout == 30
    assert fn_a.src_path == "functions/a"


def test_load_parses_bundle_options(registry):
    fn_b = registry.lookup("fn-b")

    assert fn_b.timeout == 5
    assert fn_b.bundle.minify is True
    assert fn_b.bundle.external_modules == ["aws-sdk"]
    assert fn_b.bundle.copy_files[0].from_ == "assets"
    assert fn_b.bundle.copy_files[0].destination == "static"


def test_live_dev_disabled_functions_not_registered(registry):
    assert registry.get("fn-disabled") is None


def test_invalid_entry_skipped(tmp_path):
    path = tmp_path / "functions.yml"
    path.write_text(
        """
functions:
  good:
    handler: app.handler
    runtime: python3.11
    srcPath: functions/good
  bad-runtime:
    handler: app.handler
    runtime: go1.x
    srcPath: functions/bad
""",
        encoding="utf-8",
    )
    registry = FunctionRegistry(str(path))

    loaded = registry.load_functions_config()

    assert list(loaded) == ["good"]
    assert registry.get("bad-runtime") is None


def test_reload_unregisters_removed_functions(tmp_path, registry, python_function):
    registry.register(python_function("manual"))
    path = tmp_path / "functions.yml"
    path.write_text(
        """
functions:
  fn-a:
    handler: app.handler
    runtime: python3.11
    srcPath: functions/a
""",
        encoding="utf-8",
    )

    registry.reload()

    assert registry.get("fn-a") is not None
    assert registry.get("fn-b") is None
    # Direct registrations are not owned by the intake file.
    assert registry.get("manual") is not None


def test_yaml_error_keeps_previous_entries(tmp_path, registry):
    (tmp_path / "functions.yml").write_text("functions: [unclosed", encoding="utf-8")

    registry.reload()

    assert registry.get("fn-a") is not None
    assert registry.get("fn-b") is not None


def test_missing_file_empties_file_entries(tmp_path, registry):
    (tmp_path / "functions.yml").unlink()

    registry.reload()

    assert len(registry) == 0


def test_derive_function_id():
    assert (
        derive_function_id("dev-app/Api/Lambda_GET_/$default", "fn.v2")
        == "dev-app-Api-Lambda_GET_--default-fn-v2"
    )


def test_definition_defaults():
    definition = FunctionDefinition.from_dict("fn", {"handler": "src/index.handler", "srcPath": "svc"})

    assert definition.runtime == DEFAULT_RUNTIME
    assert definition.timeout == DEFAULT_TIMEOUT
    assert definition.bundle.enabled is True
    assert definition.handler_file == "src/index"
    assert definition.handler_export == "handler"


@pytest.mark.parametrize(
    "alias, expected",
    [("node", "nodejs18.x"), ("nodejs", "nodejs18.x"), ("python", "python3.11")],
)
def test_runtime_aliases(alias, expected):
    definition = FunctionDefinition.from_dict(
        "fn", {"handler": "app.handler", "runtime": alias, "srcPath": "svc"}
    )

    assert definition.runtime == expected


def test_unsupported_runtime_rejected():
    with pytest.raises(ValueError, match="not supported"):
        FunctionDefinition.from_dict("fn", {"handler": "app.handler", "runtime": "go1.x"})


def test_missing_handler_rejected():
    with pytest.raises(ValueError, match="No handler defined"):
        FunctionDefinition.from_dict("fn", {"runtime": "nodejs18.x"})


def test_python_src_path_cannot_be_project_root():
    with pytest.raises(ValueError, match="srcPath"):
        FunctionDefinition.from_dict("fn", {"handler": "app.handler", "runtime": "python3.11"})


def test_node_unbundled_src_path_cannot_be_project_root():
    with pytest.raises(ValueError, match="Bundle cannot be disabled"):
        FunctionDefinition.from_dict(
            "fn", {"handler": "index.handler", "runtime": "nodejs18.x", "bundle": False}
        )


def test_provided_runtime_handler_is_executable_path():
    definition = FunctionDefinition.from_dict(
        "fn", {"handler": "bootstrap", "runtime": "provided.al2", "srcPath": "bin"}
    )

    assert definition.family == "provided"
    assert definition.handler_file == "bootstrap"
    assert definition.handler_export == ""
