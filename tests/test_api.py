import io

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from conftest import ASSET_ID, TX_HASH, WALLET, FakeLedger, asset_for
from storyseal import main
from storyseal.models.provenance import TransferEvent
from storyseal.services.ownership import OwnershipDiscoverer
from storyseal.services.resolver import IdentifierResolver

IDENTIFIER = "0x" + "ab" * 20
SVG = b'<svg xmlns="http://www.w3.org/2000/svg"><rect width="4" height="4"/></svg>'


@pytest.fixture
def client():
    # Lifespan is not entered, so components stay unconfigured unless a test sets them
    return TestClient(main.app)


def png_bytes(size=64):
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(size, size, 4), dtype=np.uint8)
    output = io.BytesIO()
    Image.fromarray(pixels).save(output, format="PNG")
    return output.getvalue()


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["name"] == "StorySeal API"


def test_health_reports_disabled_components(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["components"]["publisher"] == "disabled"


def test_embed_then_extract_png(client):
    response = client.post(
        "/watermark/embed",
        files={"file": ("art.png", png_bytes(), "image/png")},
        data={"asset_id": IDENTIFIER},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"

    extracted = client.post("/watermark/extract", files={"file": ("art.png", response.content, "image/png")})
    assert extracted.json() == {"found": True, "asset_id": IDENTIFIER}


def test_embed_then_extract_svg(client):
    response = client.post(
        "/watermark/embed",
        files={"file": ("art.svg", SVG, "image/svg+xml")},
        data={"asset_id": IDENTIFIER},
    )
    assert response.status_code == 200

    extracted = client.post("/watermark/extract", files={"file": ("art.svg", response.content, "image/svg+xml")})
    assert extracted.json()["asset_id"] == IDENTIFIER


def test_extract_from_unmarked_image(client):
    response = client.post("/watermark/extract", files={"file": ("art.png", png_bytes(), "image/png")})
    assert response.json() == {"found": False, "asset_id": None}


def test_invalid_identifier_is_a_validation_error(client):
    response = client.post(
        "/watermark/embed",
        files={"file": ("art.png", png_bytes(), "image/png")},
        data={"asset_id": "not-an-address"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_image_too_small_for_watermark(client):
    response = client.post(
        "/watermark/embed",
        files={"file": ("tiny.png", png_bytes(4), "image/png")},
        data={"asset_id": IDENTIFIER},
    )
    assert response.status_code == 422
    assert response.json()["error"] == "WATERMARK_CAPACITY"


def test_unsupported_media_type(client):
    response = client.post("/watermark/extract", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 415


def test_empty_upload(client):
    response = client.post("/watermark/extract", files={"file": ("art.png", b"", "image/png")})
    assert response.status_code == 400


def test_owned_assets(client, monkeypatch):
    ledger = FakeLedger()
    ledger.transfers = [TransferEvent(sender="0x" + "00" * 20, recipient=WALLET, token_ref=3,
                                      block_number=50, log_index=0, tx_hash=TX_HASH)]
    ledger.owners = {3: WALLET}
    ledger.balances = {WALLET: 1}
    monkeypatch.setattr(main, "ownership_discoverer", OwnershipDiscoverer(ledger))

    response = client.get(f"/assets/{WALLET}")

    assert response.status_code == 200
    data = response.json()
    assert data["asset_ids"] == [asset_for(3)]
    assert data["count"] == 1
    assert data["strategy"] == "transfer_replay"


def test_owned_assets_rejects_bad_address(client):
    assert client.get("/assets/0x1234").status_code == 400


def test_registration_lookup(client, monkeypatch):
    ledger = FakeLedger()
    ledger.receipts = {TX_HASH: ledger.receipt}
    monkeypatch.setattr(main, "identifier_resolver", IdentifierResolver(ledger))

    response = client.get(f"/registrations/{TX_HASH}")

    assert response.status_code == 200
    data = response.json()
    assert data["asset_id"].lower() == ASSET_ID
    assert data["token_ref"] == 7
    assert data["explorer_url"].endswith(f"/tx/{TX_HASH}")


def test_registration_lookup_unknown_transaction(client, monkeypatch):
    monkeypatch.setattr(main, "identifier_resolver", IdentifierResolver(FakeLedger()))

    response = client.get(f"/registrations/{TX_HASH}")

    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "UNRESOLVED_IDENTIFIER"
    assert body["details"]["tx_hash"] == TX_HASH


def test_seal_unavailable_without_configuration(client):
    response = client.post(
        "/seal",
        files={"file": ("art.png", png_bytes(), "image/png")},
        data={"title": "Sunset"},
    )
    assert response.status_code == 503
