from __future__ import annotations

import re
from pathlib import Path

import pytest

from ouncetracker.catalog import (
    DEALERS,
    BotMitigationClass,
    filter_dealers,
    load_catalog,
    total_products,
)
from ouncetracker.config import (
    DEFAULT_CONFIG,
    WorkerSettings,
    load_config,
    require_database_url,
)
from ouncetracker.errors import ConfigurationFault


def test_static_catalog_shape() -> None:
    ids = [dealer.dealer_id for dealer in DEALERS]

    assert len(ids) == len(set(ids))
    protected = {dealer.dealer_id for dealer in DEALERS if dealer.is_protected}
    assert protected == {"jm-bullion", "apmex", "pimbex"}
    assert total_products(DEALERS) == sum(len(dealer.products) for dealer in DEALERS)
    assert all(dealer.base_url.startswith("https://") for dealer in DEALERS)


def test_filter_dealers_preserves_order() -> None:
    selected = filter_dealers(DEALERS, re.compile("bullion", re.I))

    assert [dealer.dealer_id for dealer in selected] == [
        dealer.dealer_id for dealer in DEALERS if "bullion" in dealer.dealer_id
        or "bullion" in dealer.display_name.lower()
    ]
    assert filter_dealers(DEALERS, None) == DEALERS


def test_load_catalog_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "catalog.yml"
    path.write_text(
        """
dealers:
  - id: example-gold
    name: Example Gold
    url: https://example.com/
    bot_mitigation: protected
    products:
      - name: 1 oz Gold Bar Perth Mint
        path: /perth
""",
        encoding="utf-8",
    )

    (dealer,) = load_catalog(path)

    assert dealer.base_url == "https://example.com"
    assert dealer.bot_mitigation is BotMitigationClass.PROTECTED
    assert dealer.products[0].relative_path == "/perth"


def test_load_catalog_rejects_bad_mitigation(tmp_path: Path) -> None:
    path = tmp_path / "catalog.yml"
    path.write_text(
        "dealers:\n  - {id: a, name: A, url: https://a, bot_mitigation: paranoid}\n",
        encoding="utf-8",
    )

    with pytest.raises(ConfigurationFault):
        load_catalog(path)


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.yml")
    settings = WorkerSettings.from_config(config)

    assert config == DEFAULT_CONFIG
    assert settings.recycle.storage_every == 3
    assert settings.product_delay_ms == (1000, 3000)
    assert settings.browser.blocked_resource_types == frozenset({"image", "media", "font"})
    assert settings.diagnostics.trace_python_heap is False


def test_yaml_overrides_merge_over_defaults(tmp_path: Path) -> None:
    path = tmp_path / "worker.yml"
    path.write_text("loop:\n  cycle_delay_seconds: 60\nretry:\n  max_attempts: 5\n", encoding="utf-8")

    settings = WorkerSettings.from_config(load_config(path))

    assert settings.cycle_delay_s == 60
    assert settings.dealer_pause_s == 5
    assert settings.retry_attempts == 5


def test_recycle_thresholds_must_nest() -> None:
    config = load_config(Path("does-not-exist.yml"))
    config["recycle"]["page_every"] = 7

    with pytest.raises(ConfigurationFault):
        WorkerSettings.from_config(config)


def test_missing_database_url_is_a_configuration_fault() -> None:
    with pytest.raises(ConfigurationFault):
        require_database_url({})
    assert require_database_url({"DATABASE_URL": " sqlite:///x.db "}) == "sqlite:///x.db"


@pytest.mark.parametrize(
    "product_yaml",
    [
        "{name: 1 oz Gold Bar}",
        "{path: /gold}",
        "{name: '', path: /gold}",
        "null",
    ],
)
def test_load_catalog_rejects_incomplete_product(tmp_path: Path, product_yaml: str) -> None:
    path = tmp_path / "catalog.yml"
    path.write_text(
        "dealers:\n"
        "  - id: a\n"
        "    name: A\n"
        "    url: https://a.example\n"
        "    products:\n"
        "      - {name: 1 oz Gold Bar Valcambi, path: /valcambi}\n"
        f"      - {product_yaml}\n",
        encoding="utf-8",
    )

    with pytest.raises(ConfigurationFault, match="Product entry missing"):
        load_catalog(path)


def test_load_catalog_rejects_duplicate_product(tmp_path: Path) -> None:
    path = tmp_path / "catalog.yml"
    path.write_text(
        "dealers:\n"
        "  - id: a\n"
        "    name: A\n"
        "    url: https://a.example\n"
        "    products:\n"
        "      - {name: 1 oz Gold Bar, path: /one}\n"
        "      - {name: 1 oz Gold Bar, path: /two}\n",
        encoding="utf-8",
    )

    with pytest.raises(ConfigurationFault, match="Duplicate product"):
        load_catalog(path)
