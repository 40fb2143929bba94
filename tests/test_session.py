import io

import pytest
from PIL import Image

from qr_matrix_art.errors import DecodeError, LocatorNotFound
from qr_matrix_art.session import ArtSession, SessionState
from qr_matrix_art.settings import ArtSettings, ArtStyle


def test_happy_path(qr_raster, qr_matrix):
    session = ArtSession()
    assert session.state == SessionState.IDLE

    session.load_image(qr_raster)
    assert session.state == SessionState.IMAGE_LOADED

    recovery = session.extract()
    assert recovery is not None
    assert session.state == SessionState.MATRIX_EXTRACTED
    assert session.matrix == qr_matrix

    session.select_style(ArtSettings(style=ArtStyle.CITY_NIGHT, size_px=qr_matrix.size * 8))
    assert session.state == SessionState.STYLE_SELECTED

    image = session.render()
    assert session.state == SessionState.RENDERED
    assert session.result is image


def test_failed_extraction_returns_to_idle(white_raster):
    session = ArtSession()
    session.load_image(white_raster)
    assert session.extract() is None
    assert session.state == SessionState.IDLE
    assert isinstance(session.last_error, LocatorNotFound)


def test_load_bytes(qr_raster):
    buf = io.BytesIO()
    qr_raster.to_pil().save(buf, format="PNG")
    session = ArtSession()
    session.load_image(buf.getvalue())
    assert session.raster.width == qr_raster.width

    with pytest.raises(DecodeError):
        session.load_image(b"garbage")


def test_invalid_transitions_raise(qr_raster):
    session = ArtSession()
    with pytest.raises(RuntimeError):
        session.extract()
    with pytest.raises(RuntimeError):
        session.select_style("abstract")
    session.load_image(qr_raster)
    with pytest.raises(RuntimeError):
        session.render()


def test_new_image_restarts_and_bumps_generation(qr_raster, qr_matrix):
    session = ArtSession()
    first = session.load_matrix(qr_matrix)
    session.select_style("abstract")
    second = session.load_image(qr_raster)
    assert second == first + 1
    assert session.state == SessionState.IMAGE_LOADED
    assert session.settings is None and session.matrix is None


def test_stale_render_is_ignored(qr_matrix, qr_raster):
    session = ArtSession()
    session.load_matrix(qr_matrix)
    session.select_style(ArtSettings(style="abstract", size_px=qr_matrix.size * 4))
    ticket = session.begin_render()

    # User picks another image while the render is in flight
    session.load_image(qr_raster)
    late = Image.new("RGB", (10, 10))
    assert session.complete_render(ticket, late) is False
    assert session.result is None
    assert session.state == SessionState.IMAGE_LOADED


def test_stale_extraction_is_ignored(qr_raster, white_raster):
    session = ArtSession()
    old_ticket = session.load_image(white_raster)
    session.load_image(qr_raster)
    assert session.complete_extraction(old_ticket, error=LocatorNotFound(0)) is False
    assert session.state == SessionState.IMAGE_LOADED
    assert session.extract() is not None


def test_restyle_after_render(qr_matrix):
    session = ArtSession()
    session.load_matrix(qr_matrix)
    session.select_style(ArtSettings(style="abstract", size_px=qr_matrix.size * 4))
    session.render()
    session.select_style(ArtSettings(style="forest-cabin", size_px=qr_matrix.size * 4))
    assert session.state == SessionState.STYLE_SELECTED
    assert session.result is None
