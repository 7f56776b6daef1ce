"""Tests for the config template engine."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from ephemeral_cluster.errors import ConfigRenderError
from ephemeral_cluster.templates import (
    AUTH_TEMPLATE,
    PROXY_TEMPLATE,
    SSH_TEMPLATE,
    TemplateEngine,
    placeholder,
    render_template,
)


def test_render_replaces_every_occurrence() -> None:
    """Each placeholder is substituted wherever it appears."""
    rendered = render_template(
        "a: {{X}}\nb: {{X}}-{{Y}}\n",
        {"X": "one", "Y": 2},
    )

    assert rendered == "a: one\nb: one-2\n"


def test_render_leaves_unknown_placeholders() -> None:
    """Placeholders without a value are left untouched."""
    assert render_template("{{A}} {{B}}", {"A": "x"}) == "x {{B}}"


def test_render_is_literal() -> None:
    """Values are inserted verbatim, without escaping."""
    assert render_template('k: "{{V}}"', {"V": 'a"b'}) == 'k: "a"b"'


def test_placeholder_syntax() -> None:
    """Placeholder tokens use double braces."""
    assert placeholder("TELEPORT_DATA_DIR") == "{{TELEPORT_DATA_DIR}}"


@pytest.mark.parametrize("name", [AUTH_TEMPLATE, PROXY_TEMPLATE, SSH_TEMPLATE])
def test_packaged_templates_render_to_yaml(name: str) -> None:
    """Every packaged template becomes valid YAML once rendered."""
    engine = TemplateEngine()
    values = {
        "TELEPORT_DATA_DIR": "/tmp/data",
        "TELEPORT_LICENSE_FILE": "",
        "TELEPORT_AUTH_TOKEN": "0123abcd",
        "TELEPORT_AUTH_CA_PIN": "sha256:ff",
        "TELEPORT_AUTH_SERVER": "127.0.0.1:3025",
        "PROXY_WEB_LISTEN_ADDR": "127.0.0.1:3080",
        "PROXY_WEB_LISTEN_PORT": "3080",
        "PROXY_TUN_LISTEN_ADDR": "127.0.0.1:3024",
        "PROXY_TUN_LISTEN_PORT": "3024",
        "SSH_LISTEN_ADDR": "127.0.0.1:3022",
        "SSH_LISTEN_PORT": "3022",
    }

    rendered = engine.render_to_string(name, values)

    assert "{{" not in rendered
    document = yaml.safe_load(rendered)
    assert document["teleport"]["data_dir"] == "/tmp/data"


def test_auth_template_registers_token() -> None:
    """The auth config accepts proxies and nodes with the shared token."""
    rendered = TemplateEngine().render_to_string(
        AUTH_TEMPLATE,
        {"TELEPORT_DATA_DIR": "/d", "TELEPORT_LICENSE_FILE": "", "TELEPORT_AUTH_TOKEN": "tok"},
    )

    document = yaml.safe_load(rendered)
    assert document["auth_service"]["tokens"] == ["proxy,node:tok"]
    assert document["auth_service"]["listen_addr"] == "127.0.0.1:0"


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow packaged ones."""
    (tmp_path / AUTH_TEMPLATE).write_text("custom: {{TELEPORT_AUTH_TOKEN}}\n")
    engine = TemplateEngine.with_overrides(tmp_path)

    assert engine.render_to_string(AUTH_TEMPLATE, {"TELEPORT_AUTH_TOKEN": "t"}) == "custom: t\n"
    # Templates absent from the override directory still come from the package.
    assert "proxy_service" in engine.load(PROXY_TEMPLATE)


def test_unknown_template_raises() -> None:
    """Loading a template that does not exist is a render error."""
    with pytest.raises(ConfigRenderError):
        TemplateEngine().load("missing.yaml")
