"""
FastAPI Server for tilesmith

Exposes grid planning, splitting, merging and chroma keying so a
front end can drive the tile workflow and call its own image
generation backend per tile.
"""

import json
import logging
from typing import Any, List, Optional, Union

import numpy as np
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tilesmith.compositing.chroma import KeyColorSpec, apply_chroma_key
from tilesmith.compositing.merge import merge_tiles
from tilesmith.config.run_config import RunConfig
from tilesmith.errors import IncompleteTileSetError, SourceImageError
from tilesmith.imaging import JPEG_FORMAT, PNG_FORMAT, image_from_data_url, image_to_data_url
from tilesmith.tiling.models import GridPlan, TileGeometry, TileJob
from tilesmith.tiling.planner import plan_grid, plan_grid_with_counts, tile_geometries
from tilesmith.tiling.splitter import read_source, split_image

VERSION = "0.1.0"


class NumpyEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles numpy types"""
    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.bool_):
            return bool(obj)
        return super().default(obj)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="tilesmith API",
    description="Tile planning, splitting and seam-aware merging for per-tile image regeneration",
    version=VERSION,
)

# Add CORS middleware for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class GridRequest(BaseModel):
    """Grid parameters shared by plan and split requests"""
    max_tile_dimension: int = 1024
    overlap_ratio: float = 0.1
    # Explicit grid; both or neither
    rows: Optional[int] = None
    cols: Optional[int] = None


class PlanRequest(GridRequest):
    """Request body for grid planning"""
    width: int
    height: int


class SplitRequest(GridRequest):
    """Request body for splitting a base64-encoded image"""
    image: str  # Base64-encoded image (with or without data URL prefix)


class TileModel(BaseModel):
    """One tile result positioned in the original image"""
    row: int
    col: int
    x: int
    y: int
    width: int
    height: int
    image: str  # Base64-encoded tile (with or without data URL prefix)


class MergeRequest(BaseModel):
    """Request body for merging tile results"""
    width: int
    height: int
    tiles: List[TileModel]
    key_color: Union[str, List[int]] = "green"
    tolerance: float = 10.0
    remove_background: bool = True


class ChromaKeyRequest(BaseModel):
    """Request body for keying a single image"""
    image: str
    key_color: Union[str, List[int]] = "green"
    tolerance: float = 10.0


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str


def _plan_for(request: GridRequest, width: int, height: int) -> GridPlan:
    if (request.rows is None) != (request.cols is None):
        raise ValueError("rows and cols must be given together")
    if request.rows is not None:
        return plan_grid_with_counts(width, height, request.rows, request.cols, request.overlap_ratio)
    return plan_grid(width, height, request.max_tile_dimension, request.overlap_ratio)


def _key_color(value: Union[str, List[int]]):
    return tuple(value) if isinstance(value, list) else value


def _json_response(output: dict) -> JSONResponse:
    # Use custom encoder to handle numpy types
    json_str = json.dumps(output, cls=NumpyEncoder)
    return JSONResponse(content=json.loads(json_str))


def _split_output(image: np.ndarray, request: GridRequest) -> dict:
    height, width = image.shape[:2]
    result = split_image(image, _plan_for(request, width, height))
    return {
        "plan": result.plan.to_dict(),
        "tiles": [
            {**job.geometry.to_dict(), "image": image_to_data_url(job.source, PNG_FORMAT)}
            for job in result.jobs
        ],
    }


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", version=VERSION)


@app.post("/plan")
async def plan(request: PlanRequest):
    """Compute the tile grid for an image size."""
    try:
        grid = _plan_for(request, request.width, request.height)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "plan": grid.to_dict(),
        "tiles": [g.to_dict() for g in tile_geometries(grid)],
    }


@app.post("/split")
async def split(request: SplitRequest):
    """
    Split a base64-encoded image into tiles.

    Returns the plan and each tile's geometry with its crop as a PNG
    data URL.
    """
    try:
        logger.info("Received split request")
        image = read_source(image_from_data_url(request.image))
        output = _split_output(image, request)
        logger.info(f"Split {image.shape[1]}x{image.shape[0]} image into {len(output['tiles'])} tiles")
        return _json_response(output)

    except (SourceImageError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Split error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/split/upload")
async def split_upload(
    file: UploadFile = File(...),
    max_tile_dimension: int = 1024,
    overlap_ratio: float = 0.1,
):
    """
    Split an uploaded image file.

    Accepts JPEG, PNG image files.
    """
    try:
        logger.info(f"Received file upload: {file.filename}")
        contents = await file.read()
        image = read_source(contents)
        request = GridRequest(max_tile_dimension=max_tile_dimension, overlap_ratio=overlap_ratio)
        return _json_response(_split_output(image, request))

    except (SourceImageError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Split error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/merge")
async def merge(request: MergeRequest):
    """
    Merge tile results into one image.

    Returns a PNG data URL, or JPEG when the background is kept.
    """
    try:
        logger.info(f"Received merge request with {len(request.tiles)} tiles")
        jobs = []
        for tile in request.tiles:
            geometry = TileGeometry(
                row=tile.row, col=tile.col, x=tile.x, y=tile.y, width=tile.width, height=tile.height
            )
            jobs.append(TileJob(geometry=geometry, result=image_from_data_url(tile.image)))

        key_spec = None
        # The key color only takes part in the merge when it is being removed
        if request.remove_background:
            key_spec = KeyColorSpec(color=_key_color(request.key_color), tolerance=request.tolerance)
        canvas = merge_tiles(
            jobs,
            (request.width, request.height),
            key_spec=key_spec,
            remove_background=request.remove_background,
        )

        fmt = PNG_FORMAT if request.remove_background else JPEG_FORMAT
        return {"image": image_to_data_url(canvas, fmt), "width": request.width, "height": request.height}

    except IncompleteTileSetError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Merge error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/chroma-key")
async def chroma_key(request: ChromaKeyRequest):
    """Make key-colored pixels of one image transparent."""
    try:
        image = image_from_data_url(request.image)
        key_spec = KeyColorSpec(color=_key_color(request.key_color), tolerance=request.tolerance)
        return {"image": image_to_data_url(apply_chroma_key(image, key_spec), PNG_FORMAT)}

    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/config")
async def get_default_config():
    """Get the default run configuration"""
    return RunConfig().to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
