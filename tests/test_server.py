"""
Tests for the FastAPI service.
"""

import pytest
from fastapi.testclient import TestClient

from server import app
from tests.fixtures.image_fixtures import create_gradient, create_solid, encoded_png
from tilesmith.imaging import image_from_data_url, image_to_data_url


@pytest.fixture
def client():
    return TestClient(app)


class TestHealthAndConfig:
    """Tests for informational endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_config(self, client):
        response = client.get("/config")
        assert response.status_code == 200
        assert response.json()["concurrency"] == 4


class TestPlanEndpoint:
    """Tests for POST /plan."""

    def test_automatic(self, client):
        response = client.post("/plan", json={"width": 4000, "height": 3000})
        assert response.status_code == 200
        body = response.json()
        assert (body["plan"]["rows"], body["plan"]["cols"]) == (4, 5)
        assert len(body["tiles"]) == 20

    def test_explicit(self, client):
        response = client.post("/plan", json={"width": 2000, "height": 1000, "rows": 1, "cols": 2})
        assert response.json()["tiles"][1]["x"] == 947

    def test_half_explicit_rejected(self, client):
        response = client.post("/plan", json={"width": 100, "height": 100, "rows": 2})
        assert response.status_code == 400


class TestSplitMergeEndpoints:
    """Tests for POST /split and POST /merge."""

    def test_split_then_merge(self, client):
        """Test tiles returned by /split merge back into the source."""
        image = create_gradient((40, 60))
        response = client.post(
            "/split",
            json={"image": image_to_data_url(image), "rows": 2, "cols": 2, "overlap_ratio": 0.2},
        )
        assert response.status_code == 200
        tiles = response.json()["tiles"]
        assert len(tiles) == 4

        response = client.post(
            "/merge",
            json={"width": 60, "height": 40, "tiles": tiles, "remove_background": True,
                  "key_color": "#123456", "tolerance": 0},
        )
        assert response.status_code == 200
        merged = image_from_data_url(response.json()["image"])
        assert (merged == image).all()

    def test_split_bad_image(self, client):
        response = client.post("/split", json={"image": "bm90IGFuIGltYWdl"})
        assert response.status_code == 400

    def test_split_upload(self, client):
        files = {"file": ("tile.png", encoded_png(create_gradient((30, 30))), "image/png")}
        response = client.post("/split/upload?max_tile_dimension=20", files=files)
        assert response.status_code == 200
        assert len(response.json()["tiles"]) == 4

    def test_merge_incomplete(self, client):
        """Test a grid with a missing cell is a conflict."""
        tile = image_to_data_url(create_solid((10, 10), (0, 0, 255)))
        tiles = [
            {"row": 0, "col": 0, "x": 0, "y": 0, "width": 10, "height": 10, "image": tile},
            {"row": 1, "col": 1, "x": 10, "y": 10, "width": 10, "height": 10, "image": tile},
        ]
        response = client.post("/merge", json={"width": 20, "height": 20, "tiles": tiles})
        assert response.status_code == 409

    def test_merge_keeps_background_as_jpeg(self, client):
        tile = image_to_data_url(create_solid((10, 10), (0, 0, 255)))
        tiles = [{"row": 0, "col": 0, "x": 0, "y": 0, "width": 10, "height": 10, "image": tile}]
        response = client.post(
            "/merge", json={"width": 10, "height": 10, "tiles": tiles, "remove_background": False}
        )
        assert response.json()["image"].startswith("data:image/jpeg;base64,")

    def test_merge_keeps_background_blends_seam(self, client):
        """Test a kept key color is feathered like any other color at seams."""
        red = image_to_data_url(create_solid((20, 56), (0, 0, 255)))
        green = image_to_data_url(create_solid((20, 56), (0, 255, 0)))
        tiles = [
            {"row": 0, "col": 0, "x": 0, "y": 0, "width": 56, "height": 20, "image": red},
            {"row": 0, "col": 1, "x": 44, "y": 0, "width": 56, "height": 20, "image": green},
        ]
        response = client.post(
            "/merge",
            json={"width": 100, "height": 20, "tiles": tiles, "key_color": "green",
                  "remove_background": False},
        )
        assert response.status_code == 200
        merged = image_from_data_url(response.json()["image"])
        blue, green_level, red_level = merged[10, 50, :3]
        assert red_level > 60
        assert green_level > 60


class TestChromaKeyEndpoint:
    """Tests for POST /chroma-key."""

    def test_keys_background(self, client):
        image = create_solid((4, 4), (0, 255, 0))
        image[0, 0, :3] = (0, 0, 255)
        response = client.post("/chroma-key", json={"image": image_to_data_url(image)})
        keyed = image_from_data_url(response.json()["image"])
        assert keyed[0, 0, 3] == 255
        assert keyed[3, 3, 3] == 0

    def test_bad_color(self, client):
        image = image_to_data_url(create_solid((2, 2), (0, 0, 0)))
        response = client.post("/chroma-key", json={"image": image, "key_color": "mauve"})
        assert response.status_code == 400