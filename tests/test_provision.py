import pytest

from matrixci import job, matrix, sh
from matrixci.container import ContainerProvisioner, ImageSpec, render_dockerfile
from matrixci.errors import ProvisionFailure
from matrixci.expansion import expand
from matrixci.provision import LocalProvisioner, NativeDeps, ToolchainSpec, matrix_env


class TestToolchainSpec:
    def test_install_with_components_and_override(self):
        spec = ToolchainSpec("stable", components=("clippy",))
        assert spec.commands() == [
            "rustup toolchain install stable --profile minimal --component clippy",
            "rustup override set stable",
        ]

    def test_without_override(self):
        assert ToolchainSpec("beta", override=False).commands() == [
            "rustup toolchain install beta --profile minimal",
        ]

    def test_identity_includes_components(self):
        assert ToolchainSpec("stable").identity == "stable"
        assert ToolchainSpec("stable", components=("rustfmt", "clippy")).identity == "stable+clippy+rustfmt"


class TestNativeDeps:
    def test_apt_command(self):
        cmd = NativeDeps(("cmake", "pkg-config", "libgtk-3-dev")).command()
        assert cmd == "sudo apt-get update && sudo apt-get install -y cmake pkg-config libgtk-3-dev"

    def test_nothing_to_install(self):
        assert NativeDeps(()).command() is None

    def test_unknown_manager(self):
        with pytest.raises(ProvisionFailure):
            NativeDeps(("cmake",), manager="pacman").command()


def test_local_provisioner_failure_carries_a_hint(tmp_path):
    prov = LocalProvisioner(tmp_path)
    j = job("x", sh("a", "true"))
    env = prov.prepare(j, expand(j)[0])
    with pytest.raises(ProvisionFailure) as exc:
        prov._run_all(env, ["exit 7"], "toolchain 'stable' install")
    assert "exit=7" in exc.value.message
    assert exc.value.details["hint"]


def test_prepare_starts_from_a_clean_directory(tmp_path):
    prov = LocalProvisioner(tmp_path)
    j = job("x", sh("a", "true"))
    env = prov.prepare(j, expand(j)[0])
    (env.workdir / "stale").write_text("old", encoding="utf-8")
    env = prov.prepare(j, expand(j)[0])
    assert not (env.workdir / "stale").exists()


def test_matrix_env():
    j = job("x", sh("a", "true"), matrix=matrix(platform=["ubuntu-latest"], toolchain=["stable"]))
    assert matrix_env(expand(j)[0]) == {"MATRIX_PLATFORM": "ubuntu-latest", "MATRIX_TOOLCHAIN": "stable"}


class TestContainer:
    def test_dockerfile_describes_the_development_image(self):
        text = render_dockerfile(ImageSpec())
        assert 'ARG VARIANT="edge"' in text
        assert "FROM alpine:${VARIANT}" in text
        assert 'ARG UID="1000"' in text
        assert "addgroup ${USER} wheel" in text
        assert "rust-clippy" in text and "gtk+3.0-dev" in text
        assert 'echo "permit nopass :wheel" > /etc/doas.d/doas.conf' in text
        assert "ENV OPENSSL_NO_VENDOR=1" in text
        assert 'SHELL ["bash"]' in text
        assert "COPY .gitconfig /home/${USER}/.gitconfig" in text

    def test_dockerfile_without_git_identity(self):
        text = render_dockerfile(ImageSpec(user="dev", uid=1200, git_identity_file=None))
        assert 'ARG USER="dev"' in text
        assert 'ARG UID="1200"' in text
        assert "COPY" not in text

    def test_docker_command_mounts_the_cell_environment(self, tmp_path):
        prov = ContainerProvisioner("matrixci-dev:latest", tmp_path)
        prov._checked = True
        j = job("lint", sh("a", "true"), matrix=matrix(platform=["ubuntu-latest"]), env={"RUST_LOG": "info"})
        env = prov.prepare(j, expand(j)[0])

        argv = prov.docker_command(env, "cargo clippy", cwd="crates/core")

        assert argv[:3] == ["docker", "run", "--rm"]
        assert f"{env.workdir}:/workspace" in argv
        assert argv[argv.index("-w") + 1] == "/workspace/crates/core"
        assert "MATRIX_PLATFORM=ubuntu-latest" in argv
        assert "RUST_LOG=info" in argv
        assert not any(a.startswith("PATH=") for a in argv)
        assert argv[-4:] == ["matrixci-dev:latest", "sh", "-c", "cargo clippy"]
