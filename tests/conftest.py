from typing import List

import pytest

from tippulse.config import AssetConfig

from tests.fakes import TOKEN_A, TOKEN_B, TOPIC


@pytest.fixture
def assets() -> List[AssetConfig]:
    return [
        AssetConfig(kind="NHT", address=TOKEN_A, topic0=TOPIC, decimals=18, symbol="NHT"),
        AssetConfig(kind="JPYC", address=TOKEN_B, topic0=TOPIC, decimals=18, symbol="JPYC"),
    ]


@pytest.fixture
def one_asset() -> List[AssetConfig]:
    return [AssetConfig(kind="NHT", address=TOKEN_A, topic0=TOPIC, decimals=18, symbol="NHT")]
