"""Tests for configuration dataclasses and YAML loading."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from hwtest_visa.config import (
    FlowControl,
    OpenOptions,
    Parity,
    SerialOptions,
    SessionConfig,
    SessionManagerConfig,
    UsbtmcOptions,
    VisaConfig,
    load_config,
    parse_config,
)
from hwtest_visa.errors import ValidationError
from hwtest_visa.quirks import QuirkProfile

# ---------------------------------------------------------------------------
# Option dataclasses
# ---------------------------------------------------------------------------


class TestSerialOptions:
    """Tests for SerialOptions."""

    def test_defaults(self) -> None:
        options = SerialOptions()
        assert options.baud_rate == 9600
        assert options.parity is Parity.NONE
        assert options.flow_control is FlowControl.NONE

    def test_strings_normalized_to_enums(self) -> None:
        options = SerialOptions.from_dict({"parity": "even", "flow_control": "hardware"})
        assert options.parity is Parity.EVEN
        assert options.flow_control is FlowControl.HARDWARE

    @pytest.mark.parametrize(
        "data",
        [{"baud_rate": 0}, {"data_bits": 9}, {"stop_bits": 3}, {"parity": "sideways"}],
    )
    def test_invalid(self, data: dict) -> None:
        with pytest.raises(ValidationError):
            SerialOptions.from_dict(data)

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="baudrate"):
            SerialOptions.from_dict({"baudrate": 115200})


class TestOpenOptions:
    """Tests for OpenOptions."""

    def test_quirks_name_resolved(self) -> None:
        assert OpenOptions(quirks="RIGOL").quirks is QuirkProfile.RIGOL  # type: ignore[arg-type]

    def test_unknown_quirks_rejected(self) -> None:
        with pytest.raises(ValidationError, match="quirk profile"):
            OpenOptions.from_dict({"quirks": "tektronix"})

    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            OpenOptions(timeout=0)

    def test_empty_read_termination_rejected(self) -> None:
        with pytest.raises(ValidationError):
            OpenOptions(read_termination="")

    def test_nested_sections(self) -> None:
        options = OpenOptions.from_dict({"serial": {"baud_rate": 115200}, "usbtmc": {"chunk_size": 1024}})
        assert options.serial.baud_rate == 115200
        assert options.usbtmc == UsbtmcOptions(chunk_size=1024)

    def test_merged_keeps_unspecified_nested_values(self) -> None:
        base = OpenOptions.from_dict({"serial": {"baud_rate": 115200, "parity": "odd"}})
        merged = base.merged({"timeout": 5.0, "serial": {"baud_rate": 19200}})
        assert merged.timeout == 5.0
        assert merged.serial.baud_rate == 19200
        assert merged.serial.parity is Parity.ODD
        assert base.serial.baud_rate == 115200

    def test_merged_rejects_unknown_keys(self) -> None:
        with pytest.raises(ValidationError):
            OpenOptions().merged({"speed": 1})


# ---------------------------------------------------------------------------
# Session manager filter
# ---------------------------------------------------------------------------


class TestResourceFilter:
    """Tests for SessionManagerConfig.accepts."""

    def test_no_filter_accepts_everything(self) -> None:
        assert SessionManagerConfig().accepts("ASRL3::INSTR")

    def test_pattern_string(self) -> None:
        config = SessionManagerConfig(resource_filter="USB?*::INSTR")
        assert config.accepts("USB0::0x1AB1::0x04CE::INSTR")
        assert not config.accepts("ASRL3::INSTR")

    def test_regex(self) -> None:
        config = SessionManagerConfig(resource_filter=re.compile(r"0x1AB1"))
        assert config.accepts("USB0::0x1AB1::0x04CE::INSTR")
        assert not config.accepts("USB0::0x0957::0x1796::INSTR")

    def test_predicate(self) -> None:
        config = SessionManagerConfig(resource_filter=lambda resource: resource.startswith("SIM"))
        assert config.accepts("SIM::PSU::INSTR")
        assert not config.accepts("ASRL3::INSTR")

    def test_pattern_list(self) -> None:
        config = SessionManagerConfig(resource_filter=("SIM::*", "ASRL?*::INSTR"))
        assert config.accepts("ASRL3::INSTR")
        assert config.accepts("SIM::DMM::INSTR")
        assert not config.accepts("USB0::0x1AB1::0x04CE::INSTR")

    def test_from_dict_filter_list_and_regex(self) -> None:
        listed = SessionManagerConfig.from_dict({"filter": ["SIM::*"]})
        assert listed.resource_filter == ("SIM::*",)
        regex = SessionManagerConfig.from_dict({"filter_regex": "ttyusb"})
        assert regex.accepts("ASRL/dev/ttyUSB0::INSTR")

    def test_nested_session_config(self) -> None:
        config = SessionManagerConfig.from_dict({"session": {"max_consecutive_errors": 2}})
        assert config.session == SessionConfig(max_consecutive_errors=2)


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

SAMPLE_YAML = """\
manager:
  scan_interval: 2.5
  filter: ["USB?*::INSTR", "SIM::*"]
  session:
    execute_timeout: 10.0
    auto_reconnect: false

defaults:
  timeout: 3.0

resources:
  "USB?*::0x1AB1::*":
    quirks: rigol
    usbtmc:
      chunk_size: 4096
  "ASRL/dev/ttyUSB*::INSTR":
    serial:
      baud_rate: 115200
"""


class TestLoadConfig:
    """Tests for load_config / parse_config."""

    def test_full_file(self, tmp_path: Path) -> None:
        path = tmp_path / "visa.yaml"
        path.write_text(SAMPLE_YAML)
        config = load_config(path)

        assert config.manager.scan_interval == 2.5
        assert config.manager.resource_filter == ("USB?*::INSTR", "SIM::*")
        assert config.manager.session.execute_timeout == 10.0
        assert config.manager.session.auto_reconnect is False
        assert config.defaults.timeout == 3.0

    def test_options_for_first_matching_pattern(self, tmp_path: Path) -> None:
        path = tmp_path / "visa.yaml"
        path.write_text(SAMPLE_YAML)
        config = load_config(path)

        rigol = config.options_for("USB0::0x1AB1::0x04CE::DS1ZA123::INSTR")
        assert rigol.quirks is QuirkProfile.RIGOL
        assert rigol.usbtmc.chunk_size == 4096
        assert rigol.timeout == 3.0

        serial = config.options_for("ASRL/dev/ttyUSB0::INSTR")
        assert serial.serial.baud_rate == 115200

        assert config.options_for("TCPIP0::10.0.0.5::5025::SOCKET") == config.defaults

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == VisaConfig()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ValueError, match="defaults"):
            parse_config({"defaults": [1, 2]})
