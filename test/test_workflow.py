# End-to-end tests of a provisioning run with local key generation
#
# The Linux_for_Tegra tools are replaced by the scripts from conftest.py

import configparser
import hashlib
import os

from conftest import (
    FAKE_DTS_GEN,
    FAKE_GEN_EKB,
    FAKE_TEGRASIGN,
    need_to_install_package_err,
    write_script,
)

import pytest

try:
    from tegrakeys import generate_keys
    from tegrakeys.certs import parse_signature_list
    from tegrakeys.config import ToolPaths
    from tegrakeys.encoding import decode
    from tegrakeys.keysource import LocalKeySource
    from tegrakeys.tools import EkbBuilder, TegraSignTool, UefiDtsGenerator
    from tegrakeys.util import CollaboratorError, PreconditionError
    from tegrakeys.workflow import ABORTED, DONE, ProvisioningWorkflow
except ImportError:
    need_to_install_package_err()

KEY_FILES = [
    "rsa.pem",
    "rsa.pubkey",
    "rsa.hash",
    "sbk.key",
    "sbk_xml.key",
    "kek.key",
    "kek_xml.key",
    "kek_optee.key",
    "sym_t234.key",
    "sym2_t234.key",
    "auth_t234.key",
    "fuse.xml",
]
UEFI_FILES = [
    os.path.join("uefi_keys", f"{stem}.{ext}")
    for stem in ("PK", "KEK", "db_1", "db_2")
    for ext in ("key", "crt", "esl")
] + [os.path.join("uefi_keys", "uefi_keys.conf")]
TOOL_FILES = [
    "UefiDefaultSecurityKeys.dts",
    "UefiDefaultSecurityKeys.dtbo",
    os.path.join("bootloader", "eks_t234.img"),
]


def tool_paths(fake_tools, **overrides):
    cfg = configparser.ConfigParser()
    cfg["tegrakeys"] = {}
    paths = dict(
        tegrasign=fake_tools["tegrasign"],
        uefi_dts_gen=fake_tools["uefi_dts_gen"],
        gen_ekb=fake_tools["gen_ekb"],
    )
    paths.update(overrides)
    return ToolPaths(cfg["tegrakeys"], **paths)


def read(directory, name, mode="r"):
    with open(os.path.join(directory, name), mode) as f:
        return f.read()


class InterruptedEkbBuilder(EkbBuilder):
    def build(self, workdir, *files):
        self.staged = sorted(os.listdir(workdir))
        raise KeyboardInterrupt


class CountingKeySource(LocalKeySource):
    def __init__(self):
        super().__init__()
        self.generated = 0

    def generate_symmetric(self, bits, role):
        self.generated += 1
        return super().generate_symmetric(bits, role)

    def generate_asymmetric(self, bits, role):
        self.generated += 1
        return super().generate_asymmetric(bits, role)


@pytest.mark.host_test
class TestLocalRun:
    @pytest.fixture(scope="class")
    def run(self, tmp_path_factory):
        # class scoped copy of the fake_tools fixture
        tools_dir = tmp_path_factory.mktemp("tools")
        fake_tools = {
            "tegrasign": write_script(tools_dir, "tegrasign_v3.py", FAKE_TEGRASIGN),
            "uefi_dts_gen": write_script(tools_dir, "gen_dts.py", FAKE_DTS_GEN),
            "gen_ekb": write_script(tools_dir, "gen_ekb.py", FAKE_GEN_EKB),
        }
        output_dir = str(tmp_path_factory.mktemp("keys"))
        context = generate_keys("local", output_dir, tool_paths(fake_tools))
        return context, output_dir

    def test_all_files_written(self, run):
        context, output_dir = run
        assert sorted(context.written) == sorted(KEY_FILES + UEFI_FILES + TOOL_FILES)
        for name in KEY_FILES + UEFI_FILES + TOOL_FILES:
            assert os.path.isfile(os.path.join(output_dir, name)), name
        assert not os.path.exists(os.path.join(output_dir, "nethsm_key_inventory.txt"))
        hidden = [name for name in os.listdir(output_dir) if name.startswith(".")]
        assert hidden == []
        assert context.state == DONE
        assert context.inventory is None

    def test_symmetric_key_files(self, run):
        _, output_dir = run
        sbk = decode(read(output_dir, "sbk.key"))
        assert len(read(output_dir, "sbk.key").split()) == 8
        assert decode(read(output_dir, "sbk_xml.key")) == sbk
        assert read(output_dir, "sbk_xml.key").startswith("0x")
        kek = decode(read(output_dir, "kek.key"))
        assert decode(read(output_dir, "kek_xml.key")) == kek
        assert read(output_dir, "kek_optee.key").strip() == kek.hex()
        assert len(decode(read(output_dir, "sym_t234.key"))) == 32
        assert len(decode(read(output_dir, "sym2_t234.key"))) == 16
        assert len(decode(read(output_dir, "auth_t234.key"))) == 16
        assert sbk != kek

    def test_fuse_xml(self, run):
        _, output_dir = run
        xml = read(output_dir, "fuse.xml")
        digest = hashlib.sha512(read(output_dir, "rsa.pem", "rb")).hexdigest()
        sbk = read(output_dir, "sbk_xml.key").strip()
        kek = read(output_dir, "kek_xml.key").strip()
        assert f'name="PublicKeyHash" size="64" value="0x{digest}"' in xml
        assert f'name="SecureBootKey" size="32" value="{sbk}"' in xml
        assert f'name="OemK1" size="32" value="{kek}"' in xml
        assert read(output_dir, "rsa.hash", "rb") == bytes.fromhex(digest)

    def test_signature_lists_share_guid(self, run):
        context, output_dir = run
        owners = set()
        for stem in ("PK", "KEK", "db_1", "db_2"):
            esl = read(output_dir, os.path.join("uefi_keys", f"{stem}.esl"), "rb")
            owners.add(parse_signature_list(esl)[0])
        assert owners == {context.guid}

    def test_uefi_key_matches_certificate(self, run):
        context, output_dir = run
        uefi_dir = os.path.join(output_dir, "uefi_keys")
        for record in context.certificates:
            key = read(uefi_dir, f"{record.stem}.key", "rb")
            assert key == record.signing_key.data
            crt = read(uefi_dir, f"{record.stem}.crt", "rb")
            assert crt == record.certificate_pem

    def test_ekb_inputs(self, run):
        _, output_dir = run
        expected = b"EKBt234" + b"".join(
            read(output_dir, name, "rb")
            for name in (
                "kek_optee.key",
                "sym_t234.key",
                "sym2_t234.key",
                "auth_t234.key",
            )
        )
        assert read(output_dir, os.path.join("bootloader", "eks_t234.img"), "rb") == (
            expected
        )


@pytest.mark.host_test
class TestAbortedRuns:
    def test_existing_outputs_refused(self, tmp_path, fake_tools):
        output_dir = tmp_path / "keys"
        output_dir.mkdir()
        (output_dir / "rsa.pem").write_text("previous key")
        source = CountingKeySource()
        workflow = ProvisioningWorkflow(
            source,
            str(output_dir),
            TegraSignTool(fake_tools["tegrasign"], "tegra-fuse format"),
        )
        with pytest.raises(PreconditionError, match="already exist") as e:
            workflow.run()
        assert e.value.stage == "precondition"
        assert "rsa.pem" in str(e.value)
        assert source.generated == 0
        assert workflow.context.state == ABORTED
        assert os.listdir(output_dir) == ["rsa.pem"]
        assert (output_dir / "rsa.pem").read_text() == "previous key"

    def test_force_overwrites(self, tmp_path, fake_tools):
        (tmp_path / "rsa.pem").write_text("previous key")
        generate_keys(
            "local",
            str(tmp_path),
            tool_paths(fake_tools),
            force=True,
            skip_dts=True,
            skip_ekb=True,
        )
        assert (tmp_path / "rsa.pem").read_text().startswith("-----BEGIN")
        assert not (tmp_path / "bootloader").exists()
        assert not (tmp_path / "UefiDefaultSecurityKeys.dts").exists()

    def test_missing_tool_before_generation(self, tmp_path, fake_tools):
        source = CountingKeySource()
        workflow = ProvisioningWorkflow(
            source,
            str(tmp_path / "keys"),
            TegraSignTool(str(tmp_path / "missing" / "tegrasign_v3.py"), "x"),
        )
        with pytest.raises(PreconditionError, match="tegrasign not found"):
            workflow.run()
        assert source.generated == 0

    def test_tool_failure_leaves_previous_run(self, tmp_path, fake_tools):
        output_dir = tmp_path / "keys"
        output_dir.mkdir()
        (output_dir / "sbk.key").write_text("previous sbk")
        workflow = ProvisioningWorkflow(
            LocalKeySource(),
            str(output_dir),
            TegraSignTool(fake_tools["tegrasign"], "tegra-fuse format"),
            dts_generator=UefiDtsGenerator(fake_tools["uefi_dts_gen"]),
            ekb_builder=EkbBuilder(fake_tools["failing"]),
            force=True,
        )
        with pytest.raises(CollaboratorError, match="gen_ekb.py failed") as e:
            workflow.run()
        assert e.value.stage == "external artifacts"
        assert os.listdir(output_dir) == ["sbk.key"]
        assert (output_dir / "sbk.key").read_text() == "previous sbk"

    def test_hash_marker_mismatch(self, tmp_path, fake_tools):
        with pytest.raises(CollaboratorError, match="no line with 'PKC hash'") as e:
            generate_keys(
                "local",
                str(tmp_path / "keys"),
                tool_paths(fake_tools, fuse_hash_marker="PKC hash"),
            )
        assert e.value.stage == "key generation"
        assert e.value.role == "RSA"
        assert not (tmp_path / "keys").exists()

    def test_tool_output_not_utf8(self, tmp_path, fake_tools):
        noisy_gen_ekb = write_script(
            tmp_path,
            "noisy_gen_ekb.py",
            FAKE_GEN_EKB + 'sys.stdout.buffer.write(b"gen_ekb: \\xff\\xfe done\\n")\n',
        )
        output_dir = tmp_path / "keys"
        workflow = ProvisioningWorkflow(
            LocalKeySource(),
            str(output_dir),
            TegraSignTool(fake_tools["tegrasign"], "tegra-fuse format"),
            ekb_builder=EkbBuilder(noisy_gen_ekb),
        )
        context = workflow.run()
        assert context.state == DONE
        ekb = read(output_dir, os.path.join("bootloader", "eks_t234.img"), "rb")
        assert ekb.startswith(b"EKBt234")
        assert not [name for name in os.listdir(output_dir) if name.startswith(".")]

    def test_interrupt_discards_staged_keys(self, tmp_path, fake_tools):
        output_dir = tmp_path / "keys"
        ekb_builder = InterruptedEkbBuilder(fake_tools["gen_ekb"])
        workflow = ProvisioningWorkflow(
            LocalKeySource(),
            str(output_dir),
            TegraSignTool(fake_tools["tegrasign"], "tegra-fuse format"),
            ekb_builder=ekb_builder,
        )
        with pytest.raises(KeyboardInterrupt):
            workflow.run()
        assert "kek.key" in ekb_builder.staged
        assert workflow.context.state == ABORTED
        assert os.listdir(output_dir) == []
