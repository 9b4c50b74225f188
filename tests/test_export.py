"""End-to-end export tests against an in-process fake registry."""

import base64
import gzip
import io
import json

import pytest

from imgex import (
    ArchiveWriteError,
    AuthenticationFailedError,
    CancellationToken,
    DigestMismatchError,
    ExportCancelledError,
    ExportOptions,
    ImageNotFoundError,
    InvalidCredentialFormatError,
    InvalidReferenceError,
    NoMatchingPlatformError,
    QueueProgress,
    export_filesystem,
    export_filesystem_to_writer,
    export_filesystem_with_options,
    get_image_config,
    get_image_summary,
)
from tests.helpers import (
    archive_names,
    build_layer,
    directory,
    file,
    read_archive,
    symlink,
    whiteout,
)

ARM64 = {"os": "linux", "architecture": "arm64", "variant": "v8"}


def publish_base_image(registry, repository="library/app", tag="latest"):
    """Three layers: base content, deletions, re-created content."""
    layers = [
        build_layer(
            directory("etc"),
            file("etc/hostname", b"base\n"),
            file("etc/secret", b"remove me"),
            file("var/log/old.log", b"old"),
            symlink("etc/localtime", "/usr/share/zoneinfo/UTC"),
        ),
        build_layer(whiteout("etc/secret"), whiteout("var/log"), file("app/config", b"v1")),
        build_layer(file("var/log/new.log", b"new"), file("app/config", b"v2")),
    ]
    registry.add_image(repository, tag, layers)
    return layers


@pytest.mark.asyncio
async def test_export_applies_layers(registry, export_config, tmp_path):
    publish_base_image(registry)
    output = tmp_path / "rootfs.tar"

    path = await export_filesystem(registry.ref("library/app"), output, config=export_config)

    assert path == output
    content = read_archive(output.read_bytes())
    assert content["etc/hostname"] == b"base\n"
    assert "etc/secret" not in content
    assert "var/log/old.log" not in content
    assert content["var/log/new.log"] == b"new"
    assert content["app/config"] == b"v2"
    assert "etc/localtime" in content
    assert not any(".wh." in name for name in content)


@pytest.mark.asyncio
async def test_export_sorted_with_parents(registry, export_config, tmp_path):
    publish_base_image(registry)
    output = tmp_path / "rootfs.tar"
    await export_filesystem(registry.ref("library/app"), output, config=export_config)

    names = archive_names(output.read_bytes())
    assert names == sorted(names)
    for name in names:
        parent = name.rpartition("/")[0]
        assert not parent or parent in names


@pytest.mark.asyncio
@pytest.mark.parametrize("compress", [False, True])
async def test_export_is_deterministic(registry, export_config, tmp_path, compress):
    publish_base_image(registry)
    options = ExportOptions(compress=compress)
    first = await export_filesystem_with_options(
        registry.ref("library/app"), tmp_path / "one.tar", options=options, config=export_config
    )
    second = await export_filesystem_with_options(
        registry.ref("library/app"), tmp_path / "two.tar", options=options, config=export_config
    )
    assert first.read_bytes() == second.read_bytes()


@pytest.mark.asyncio
async def test_export_compressed_suffix(registry, export_config, tmp_path):
    publish_base_image(registry)
    options = ExportOptions(compress=True)

    path = await export_filesystem_with_options(
        registry.ref("library/app"), tmp_path / "rootfs.tar", options=options, config=export_config
    )
    assert path == tmp_path / "rootfs.tar.gz"
    assert not (tmp_path / "rootfs.tar").exists()
    data = path.read_bytes()
    assert data[:2] == b"\x1f\x8b"
    assert read_archive(gzip.decompress(data))["app/config"] == b"v2"

    path = await export_filesystem_with_options(
        registry.ref("library/app"), tmp_path / "out.tgz", options=options, config=export_config
    )
    assert path == tmp_path / "out.tgz"


@pytest.mark.asyncio
async def test_progress_with_retried_layer(registry, export_config, tmp_path):
    """A layer failing twice is retried; progress steps stay 1..n+2."""
    publish_base_image(registry)
    middle = registry.layer_digests("library/app")[1]
    registry.failures[f"/v2/library/app/blobs/{middle}"] = 2
    sink = QueueProgress()

    await export_filesystem_with_options(
        registry.ref("library/app"),
        tmp_path / "rootfs.tar",
        options=ExportOptions(progress=sink),
        config=export_config,
    )

    steps = [event for event in sink.drain() if not event.description.startswith("Writing")]
    assert [event.current for event in steps] == [1, 2, 3, 4, 5]
    assert all(event.total == 5 for event in steps)
    assert steps[0].description.startswith("Resolved manifest")
    assert steps[-1].description == "Archive written"
    assert registry.failures[f"/v2/library/app/blobs/{middle}"] == 0


@pytest.mark.asyncio
async def test_progress_callback(registry, export_config, tmp_path):
    publish_base_image(registry)
    seen = []

    await export_filesystem_with_options(
        registry.ref("library/app"),
        tmp_path / "rootfs.tar",
        options=ExportOptions(progress=lambda *event: seen.append(event)),
        config=export_config,
    )
    assert seen[-1] == (5, 5, "Archive written")


@pytest.mark.asyncio
async def test_empty_auth_against_protected_registry(registry, export_config, tmp_path):
    registry.auth = "bearer"
    publish_base_image(registry)
    output = tmp_path / "rootfs.tar"

    with pytest.raises(AuthenticationFailedError) as exc_info:
        await export_filesystem(registry.ref("library/app"), output, "{}", config=export_config)
    assert exc_info.value.kind == "AuthenticationFailed"
    assert not output.exists()


@pytest.mark.asyncio
async def test_explicit_credentials(registry, export_config, tmp_path):
    registry.auth = "bearer"
    publish_base_image(registry)
    auth = json.dumps({"username": "user", "password": "secret"})

    path = await export_filesystem(
        registry.ref("library/app"), tmp_path / "rootfs.tar", auth, config=export_config
    )
    assert read_archive(path.read_bytes())["app/config"] == b"v2"


@pytest.mark.asyncio
async def test_docker_config_credentials(registry, export_config, tmp_path):
    registry.auth = "basic"
    publish_base_image(registry)
    encoded = base64.b64encode(b"user:secret").decode()
    export_config.docker_config_path.write_text(
        json.dumps({"auths": {registry.host: {"auth": encoded}}})
    )

    path = await export_filesystem(
        registry.ref("library/app"), tmp_path / "rootfs.tar", config=export_config
    )
    assert path.exists()


@pytest.mark.asyncio
async def test_invalid_auth_payload(registry, export_config, tmp_path):
    with pytest.raises(InvalidCredentialFormatError):
        await export_filesystem(
            registry.ref("library/app"), tmp_path / "x.tar", '{"user": "x"}', config=export_config
        )


@pytest.mark.asyncio
async def test_invalid_reference(export_config, tmp_path):
    with pytest.raises(InvalidReferenceError):
        await export_filesystem("Not A Reference", tmp_path / "x.tar", config=export_config)


@pytest.mark.asyncio
async def test_missing_image(registry, export_config, tmp_path):
    output = tmp_path / "rootfs.tar"
    with pytest.raises(ImageNotFoundError):
        await export_filesystem(registry.ref("library/none"), output, config=export_config)
    assert not output.exists()


@pytest.mark.asyncio
async def test_no_matching_platform(registry, export_config, tmp_path):
    image = registry.add_image("library/app", None, [build_layer(file("a"))])
    registry.add_index("library/app", "latest", [(ARM64, image)])

    with pytest.raises(NoMatchingPlatformError) as exc_info:
        await export_filesystem(
            registry.ref("library/app"), tmp_path / "rootfs.tar", config=export_config
        )
    assert "linux/arm64/v8" in str(exc_info.value)


@pytest.mark.asyncio
async def test_corrupt_layer_leaves_no_output(registry, export_config, tmp_path):
    publish_base_image(registry)
    registry.corrupt.add(registry.layer_digests("library/app")[2])
    output = tmp_path / "rootfs.tar"

    with pytest.raises(DigestMismatchError):
        await export_filesystem(registry.ref("library/app"), output, config=export_config)
    assert not output.exists()


@pytest.mark.asyncio
async def test_cancelled_export(registry, export_config, tmp_path):
    publish_base_image(registry)
    token = CancellationToken()
    output = tmp_path / "rootfs.tar"

    def cancel_on_first_step(current, total, description):
        token.cancel()

    options = ExportOptions(progress=cancel_on_first_step, cancel=token)
    with pytest.raises(ExportCancelledError):
        await export_filesystem_with_options(
            registry.ref("library/app"), output, options=options, config=export_config
        )
    assert not output.exists()


@pytest.mark.asyncio
async def test_export_to_writer(registry, export_config):
    publish_base_image(registry)
    buffer = io.BytesIO()

    written = await export_filesystem_to_writer(
        registry.ref("library/app"), buffer, config=export_config
    )
    assert written == len(buffer.getvalue())
    assert read_archive(buffer.getvalue())["etc/hostname"] == b"base\n"


@pytest.mark.asyncio
async def test_export_to_closed_writer(registry, export_config):
    publish_base_image(registry)
    buffer = io.BytesIO()
    buffer.close()

    with pytest.raises(ArchiveWriteError) as exc_info:
        await export_filesystem_to_writer(registry.ref("library/app"), buffer, config=export_config)
    assert exc_info.value.kind == "ArchiveWriteFailed"


@pytest.mark.asyncio
async def test_slow_first_layer_still_merges_in_order(registry, export_config, tmp_path):
    """Later layers finish downloading first; merge order stays bottom to top."""
    publish_base_image(registry)
    bottom = registry.layer_digests("library/app")[0]
    registry.delays[f"/v2/library/app/blobs/{bottom}"] = 0.3
    sink = QueueProgress()
    output = tmp_path / "rootfs.tar"

    await export_filesystem_with_options(
        registry.ref("library/app"),
        output,
        options=ExportOptions(progress=sink),
        config=export_config,
    )

    applied = [
        event.description.split()[2]
        for event in sink.drain()
        if event.description.startswith("Applied layer")
    ]
    assert applied == ["1/3", "2/3", "3/3"]
    content = read_archive(output.read_bytes())
    assert "etc/secret" not in content
    assert "var/log/old.log" not in content
    assert content["var/log/new.log"] == b"new"
    assert content["app/config"] == b"v2"
    assert content["etc/hostname"] == b"base\n"


@pytest.mark.asyncio
async def test_get_image_config(registry, export_config):
    config = {
        "architecture": "amd64",
        "os": "linux",
        "created": "2024-05-01T10:00:00.123456789Z",
        "config": {
            "Entrypoint": ["/docker-entrypoint.sh"],
            "Cmd": ["nginx", "-g", "daemon off;"],
            "Env": ["PATH=/usr/bin", "NGINX_VERSION=1.25.0"],
            "ExposedPorts": {"80/tcp": {}, "443/tcp": {}},
        },
        "rootfs": {"type": "layers", "diff_ids": []},
    }
    registry.add_image("library/nginx", "1.25", [build_layer(file("index.html"))], config=config)
    layer = registry.layer_digests("library/nginx", "1.25")[0]
    reference = registry.ref("library/nginx", "1.25")

    text = await get_image_config(reference, config=export_config)
    assert text == json.dumps(config, sort_keys=True)
    # layers are never fetched for config lookups
    assert not any(layer in path for path in registry.requests)

    summary = await get_image_summary(reference, config=export_config)
    assert summary.entrypoint == ["/docker-entrypoint.sh"]
    assert summary.environment["NGINX_VERSION"] == "1.25.0"
    assert summary.exposed_ports == ["443/tcp", "80/tcp"]
    assert summary.created is not None and summary.created.year == 2024
