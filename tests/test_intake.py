import logging

import pytest

from snapassets.intake import (
    ImageIntake,
    IntakeRejected,
    SelectedImage,
    needs_server_decoding,
    resolve_image_type,
    validate_upload,
)


def _img(name="a.jpg", content_type="image/jpeg", size=1024):
    return SelectedImage(name=name, content_type=content_type, data=b"x" * size)


class TestImageIntake:
    @pytest.mark.parametrize(
        "name,content_type",
        [
            ("a.jpg", "image/jpeg"),
            ("b.jpg", "image/jpg"),
            ("c.png", "image/png"),
            ("d.webp", "image/webp"),
            ("e.heic", "image/heic"),
            ("f.heif", "image/heif"),
        ],
    )
    def test_accepts_supported_types(self, name, content_type):
        intake = ImageIntake()
        assert intake.add([_img(name, content_type)]) == []
        assert len(intake) == 1

    def test_rejects_unsupported_type_and_keeps_list(self):
        intake = ImageIntake()
        intake.add([_img("ok.png", "image/png")])
        before = [f.name for f in intake.files]

        rejected = intake.add([_img("doc.pdf", "application/pdf"), _img("anim.gif", "image/gif")])

        assert len(rejected) == 2
        assert "doc.pdf" in rejected[0]
        assert "unsupported" in rejected[0].lower()
        assert [f.name for f in intake.files] == before

    def test_rejects_oversized_file(self):
        intake = ImageIntake(max_bytes=100)
        rejected = intake.add([_img(size=101)])
        assert len(rejected) == 1
        assert "larger than" in rejected[0]
        assert len(intake) == 0

    def test_size_ceiling_is_inclusive(self):
        intake = ImageIntake(max_bytes=100)
        assert intake.add([_img(size=100)]) == []

    def test_rejects_empty_file(self):
        intake = ImageIntake()
        assert intake.add([_img(size=0)])
        assert len(intake) == 0

    def test_caps_count_and_keeps_order(self):
        intake = ImageIntake(max_files=5)
        images = [_img(f"{i}.jpg") for i in range(7)]
        rejected = intake.add(images)

        assert [f.name for f in intake.files] == [f"{i}.jpg" for i in range(5)]
        assert len(rejected) == 2
        assert "at most 5" in rejected[0]

    def test_remove_and_clear(self):
        intake = ImageIntake()
        intake.add([_img("a.jpg"), _img("b.jpg")])
        removed = intake.remove(0)
        assert removed.name == "a.jpg"
        assert [f.name for f in intake.files] == ["b.jpg"]
        intake.clear()
        assert len(intake) == 0

    def test_files_is_a_copy(self):
        intake = ImageIntake()
        intake.add([_img()])
        intake.files.clear()
        assert len(intake) == 1

    def test_resolved_type_does_not_touch_callers_image(self):
        original = _img("IMG_0001.HEIC", "")
        intake = ImageIntake()
        intake.add([original])
        assert intake.files[0].content_type == "image/heic"
        assert original.content_type == ""


class TestTypeResolution:
    def test_declared_type_wins(self):
        assert resolve_image_type("photo.bin", "image/PNG") == "image/png"

    def test_extension_fallback_for_missing_type(self):
        assert resolve_image_type("IMG_0001.HEIC", "") == "image/heic"
        assert resolve_image_type("IMG_0001.heic", "application/octet-stream") == "image/heic"

    def test_heic_needs_server_decoding(self):
        assert needs_server_decoding("image/heic")
        assert needs_server_decoding("image/HEIF")
        assert not needs_server_decoding("image/jpeg")


class TestValidateUpload:
    def test_empty_selection_is_rejected(self):
        with pytest.raises(IntakeRejected) as exc:
            validate_upload([])
        assert exc.value.messages == ["No images selected."]

    def test_any_bad_file_rejects_everything(self):
        with pytest.raises(IntakeRejected) as exc:
            validate_upload([_img("a.jpg"), _img("b.txt", "text/plain")])
        assert len(exc.value.messages) == 1
        assert "b.txt" in exc.value.messages[0]

    def test_valid_selection_returns_files(self):
        files = validate_upload([_img("a.jpg"), _img("b.png", "image/png")])
        assert [f.name for f in files] == ["a.jpg", "b.png"]


def test_rejections_are_debug_diagnostics(caplog):
    caplog.set_level(logging.DEBUG, logger="snapassets.intake")
    ImageIntake().add([_img("doc.pdf", "application/pdf")])
    records = [r for r in caplog.records if r.name == "snapassets.intake"]
    assert [r.levelno for r in records] == [logging.DEBUG]
    assert records[0].getMessage().startswith("[intake]: rejected doc.pdf")
