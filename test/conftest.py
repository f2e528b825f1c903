import os
import stat

import pytest


def pytest_configure(config):
    # register custom markers
    config.addinivalue_line(
        "markers",
        "host_test: mark tegrakeys tests that run on the host machine only "
        "(don't require a NetHSM appliance or a Linux_for_Tegra tree).",
    )


def need_to_install_package_err():
    pytest.exit(
        "To run the tests, install tegrakeys in development mode: "
        "pip install -e .[test]"
    )


@pytest.fixture(scope="session", autouse=True)
def set_terminal_width():
    """Make sure terminal width is set to 120 columns for consistent test output."""
    os.environ["COLUMNS"] = "120"


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep config files of the developer machine out of the tests"""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("TEGRAKEYS_CFGFILE", raising=False)
    for var in ("NETHSM_URL", "NETHSM_USERNAME", "NETHSM_PASSWORD"):
        monkeypatch.delenv(var, raising=False)


# Stand-ins for the Linux_for_Tegra tools. They honour the same command line
# contract and write the same files.

FAKE_TEGRASIGN = """\
import hashlib
import sys

args = sys.argv[1:]
i = args.index("--pubkeyhash")
pubkey, hash_file = args[i + 1], args[i + 2]
key = args[args.index("--key") + 1]
with open(key, "rb") as f:
    digest = hashlib.sha512(f.read()).digest()
with open(pubkey, "wb") as f:
    f.write(b"PUBKEY" + digest[:16])
with open(hash_file, "wb") as f:
    f.write(digest)
print("Saving pkc public key in " + pubkey)
print("tegra-fuse format (big-endian): 0x" + digest.hex())
"""

FAKE_DTS_GEN = """\
import os
import sys

conf = sys.argv[1]
if not os.path.isfile(conf):
    sys.exit("missing " + conf)
for name in ("UefiDefaultSecurityKeys.dts", "UefiDefaultSecurityKeys.dtbo"):
    with open(name, "w") as f:
        f.write("/dts-v1/;\\n")
"""

FAKE_GEN_EKB = """\
import sys

args = sys.argv[1:]
values = dict(zip(args[::2], args[1::2]))
blob = b""
for option in ("-oem_k1_key", "-in_sym_key", "-in_sym_key2", "-in_auth_key"):
    with open(values[option], "rb") as f:
        blob += f.read()
with open(values["-out"], "wb") as f:
    f.write(b"EKB" + values["-chip"].encode() + blob)
"""

FAKE_FAILING_TOOL = """\
import sys

print("something went wrong", file=sys.stderr)
sys.exit(3)
"""


def write_script(directory, name, body):
    path = os.path.join(str(directory), name)
    with open(path, "w") as f:
        f.write(body)
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def fake_tools(tmp_path):
    """Paths of working stand-ins for tegrasign, gen_uefi_keys_dts.sh and
    gen_ekb.py"""
    tools_dir = tmp_path / "tools"
    tools_dir.mkdir()
    return {
        "tegrasign": write_script(tools_dir, "tegrasign_v3.py", FAKE_TEGRASIGN),
        "uefi_dts_gen": write_script(tools_dir, "gen_uefi_keys_dts.py", FAKE_DTS_GEN),
        "gen_ekb": write_script(tools_dir, "gen_ekb.py", FAKE_GEN_EKB),
        "failing": write_script(tools_dir, "failing_tool.py", FAKE_FAILING_TOOL),
    }
