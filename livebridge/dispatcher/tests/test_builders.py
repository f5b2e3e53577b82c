import json
import os

import pytest

from livebridge.dispatcher.core.exceptions import BuildError
from livebridge.dispatcher.models.function import BundleOptions, FunctionDefinition
from livebridge.dispatcher.services import builders
from livebridge.dispatcher.services.builders import (
    NodeBuilder,
    PassthroughBuilder,
    PythonBuilder,
    default_builders,
)


@pytest.fixture
def out_dir(tmp_path):
    return tmp_path / "out"


def node_function(**kwargs) -> FunctionDefinition:
    kwargs.setdefault("handler", "src/index.handler")
    kwargs.setdefault("runtime", "nodejs18.x")
    return FunctionDefinition(id="fn-node", src_path="web", **kwargs)


@pytest.fixture
def recorded_commands(monkeypatch):
    calls = []

    async def fake_run_command(function_id, args, cwd, env=None, shell=False):
        calls.append({"args": list(args), "cwd": cwd})
        return ""

    monkeypatch.setattr(builders, "run_command", fake_run_command)
    return calls


def test_default_builders_cover_every_family(dispatcher_config):
    assert set(default_builders(dispatcher_config)) == {"nodejs", "python", "provided"}


# ---- python ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_python_build_copies_sources(
    tmp_path, out_dir, dispatcher_config, python_function, write_source
):
    write_source("functions/a/app.py", "def handler(event, context):\n    return 1\n")
    write_source("functions/a/pkg/helpers.py", "X = 1\n")
    write_source("functions/a/__pycache__/app.cpython-311.pyc", "stale")

    output = await PythonBuilder(dispatcher_config).build(
        python_function(), tmp_path / "functions/a", out_dir
    )

    assert output.location == out_dir
    assert output.entry == "app"
    assert output.export == "handler"
    assert (out_dir / "pkg/helpers.py").exists()
    assert not (out_dir / "__pycache__").exists()


@pytest.mark.asyncio
async def test_python_nested_handler_entry_is_dotted(
    tmp_path, out_dir, dispatcher_config, python_function, write_source
):
    write_source("functions/a/handlers/api.py", "def main(event, context):\n    return 1\n")

    output = await PythonBuilder(dispatcher_config).build(
        python_function(handler="handlers/api.main"), tmp_path / "functions/a", out_dir
    )

    assert output.entry == "handlers.api"
    assert output.export == "main"


@pytest.mark.asyncio
async def test_python_syntax_error_is_reported_with_location(
    tmp_path, out_dir, dispatcher_config, python_function, write_source
):
    write_source("functions/a/app.py", "def handler(event, context:\n    return 1\n")

    with pytest.raises(BuildError) as exc_info:
        await PythonBuilder(dispatcher_config).build(
            python_function(), tmp_path / "functions/a", out_dir
        )

    diagnostics = exc_info.value.diagnostics
    assert diagnostics.startswith("SyntaxError")
    assert 'File "app.py", line 1' in diagnostics


@pytest.mark.asyncio
async def test_python_missing_handler_module(
    tmp_path, out_dir, dispatcher_config, python_function, write_source
):
    write_source("functions/a/other.py", "X = 1\n")

    with pytest.raises(BuildError, match='Could not find handler module "app.py"'):
        await PythonBuilder(dispatcher_config).build(
            python_function(), tmp_path / "functions/a", out_dir
        )


@pytest.mark.asyncio
async def test_python_install_commands_run_in_artifact(
    tmp_path, out_dir, dispatcher_config, python_function, write_source
):
    write_source("functions/a/app.py", "def handler(event, context):\n    return 1\n")
    definition = python_function(
        bundle=BundleOptions(install_commands=['echo "$LIVEBRIDGE_ARTIFACT_DIR" > installed.txt'])
    )

    await PythonBuilder(dispatcher_config).build(definition, tmp_path / "functions/a", out_dir)

    assert (out_dir / "installed.txt").read_text().strip() == str(out_dir)


@pytest.mark.asyncio
async def test_python_failing_install_command(
    tmp_path, out_dir, dispatcher_config, python_function, write_source
):
    write_source("functions/a/app.py", "def handler(event, context):\n    return 1\n")
    definition = python_function(
        bundle=BundleOptions(install_commands=["echo resolving; exit 3"])
    )

    with pytest.raises(BuildError) as exc_info:
        await PythonBuilder(dispatcher_config).build(
            definition, tmp_path / "functions/a", out_dir
        )

    assert "exited with code 3" in exc_info.value.diagnostics
    assert "resolving" in exc_info.value.diagnostics


@pytest.mark.asyncio
async def test_python_requirements_installed_with_pip(
    tmp_path, out_dir, dispatcher_config, python_function, write_source, recorded_commands
):
    write_source("functions/a/app.py", "def handler(event, context):\n    return 1\n")
    write_source("functions/a/requirements.txt", "requests\n")

    await PythonBuilder(dispatcher_config).build(
        python_function(), tmp_path / "functions/a", out_dir
    )

    (call,) = recorded_commands
    assert call["args"][-4:] == ["--target", str(out_dir), "-r", "requirements.txt"]
    assert "install" in call["args"]
    assert call["cwd"] == out_dir


@pytest.mark.asyncio
async def test_missing_build_command_is_build_error(tmp_path):
    with pytest.raises(BuildError, match="Build command not found"):
        await builders.run_command("fn", ["livebridge-no-such-command"], cwd=tmp_path)


# ---- provided ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_passthrough_references_executable(tmp_path, out_dir, write_source):
    script = write_source("bin/bootstrap", "#!/bin/sh\ncat\n")
    os.chmod(script, 0o755)
    definition = FunctionDefinition(
        id="fn-bin", handler="bootstrap", runtime="provided.al2", src_path="bin"
    )

    output = await PassthroughBuilder().build(definition, tmp_path / "bin", out_dir)

    assert output.kind == "asset"
    assert output.location == tmp_path / "bin"
    assert output.entry == "bootstrap"
    assert not out_dir.exists()


@pytest.mark.asyncio
async def test_passthrough_rejects_non_executable(tmp_path, out_dir, write_source):
    script = write_source("bin/bootstrap", "#!/bin/sh\ncat\n")
    os.chmod(script, 0o644)
    definition = FunctionDefinition(
        id="fn-bin", handler="bootstrap", runtime="provided.al2", src_path="bin"
    )

    with pytest.raises(BuildError, match="not executable"):
        await PassthroughBuilder().build(definition, tmp_path / "bin", out_dir)


@pytest.mark.asyncio
async def test_passthrough_rejects_missing_executable(tmp_path, out_dir):
    (tmp_path / "bin").mkdir()
    definition = FunctionDefinition(
        id="fn-bin", handler="bootstrap", runtime="provided.al2", src_path="bin"
    )

    with pytest.raises(BuildError, match="does not exist"):
        await PassthroughBuilder().build(definition, tmp_path / "bin", out_dir)


# ---- nodejs -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_node_unbundled_copies_tree_with_node_modules(
    tmp_path, out_dir, dispatcher_config, write_source, recorded_commands
):
    write_source("web/src/index.js", "exports.handler = async () => 1;\n")
    write_source("web/node_modules/dep/index.js", "module.exports = 1;\n")

    output = await NodeBuilder(dispatcher_config).build(
        node_function(bundle=BundleOptions(enabled=False)), tmp_path / "web", out_dir
    )

    assert recorded_commands == []
    assert output.entry == "src/index"
    assert (out_dir / "src/index.js").exists()
    assert (out_dir / "node_modules/dep/index.js").exists()


@pytest.mark.asyncio
async def test_node_unbundled_typescript_rejected(
    tmp_path, out_dir, dispatcher_config, write_source
):
    write_source("web/src/index.ts", "export const handler = async () => 1;\n")

    with pytest.raises(BuildError, match="enable bundling"):
        await NodeBuilder(dispatcher_config).build(
            node_function(bundle=BundleOptions(enabled=False)), tmp_path / "web", out_dir
        )


@pytest.mark.asyncio
async def test_node_missing_handler_file(tmp_path, out_dir, dispatcher_config, write_source):
    write_source("web/src/other.js", "exports.x = 1;\n")

    with pytest.raises(BuildError, match='Could not find handler file "src/index"'):
        await NodeBuilder(dispatcher_config).build(node_function(), tmp_path / "web", out_dir)


@pytest.mark.asyncio
async def test_node_bundle_invokes_esbuild_with_options(
    tmp_path, out_dir, dispatcher_config, write_source, recorded_commands
):
    entry = write_source("web/src/index.ts", "export const handler = async () => 1;\n")
    definition = node_function(
        runtime="nodejs20.x",
        bundle=BundleOptions(
            minify=True,
            format="esm",
            external_modules=["aws-sdk"],
            loader={".png": "dataurl"},
        ),
    )

    output = await NodeBuilder(dispatcher_config).build(definition, tmp_path / "web", out_dir)

    (call,) = recorded_commands
    args = call["args"]
    assert str(entry) in args
    assert "--bundle" in args
    assert "--format=esm" in args
    assert "--target=node20" in args
    assert f"--outfile={out_dir / 'src/index.mjs'}" in args
    assert "--external:aws-sdk" in args
    assert "--loader:.png=dataurl" in args
    assert "--minify" in args
    assert call["cwd"] == tmp_path / "web"
    assert output.entry == "src/index"
    assert output.export == "handler"


@pytest.mark.asyncio
async def test_node_modules_installed_with_declared_versions(
    tmp_path, out_dir, dispatcher_config, write_source, recorded_commands
):
    write_source("web/src/index.js", "exports.handler = async () => 1;\n")
    write_source("web/package.json", json.dumps({"dependencies": {"sharp": "^0.32.0"}}))
    definition = node_function(bundle=BundleOptions(node_modules=["sharp", "left-pad"]))

    await NodeBuilder(dispatcher_config).build(definition, tmp_path / "web", out_dir)

    esbuild, npm = recorded_commands
    assert "--external:sharp" in esbuild["args"]
    assert "install" in npm["args"]
    assert npm["cwd"] == out_dir
    manifest = json.loads((out_dir / "package.json").read_text())
    assert manifest["dependencies"] == {"sharp": "^0.32.0", "left-pad": "*"}
