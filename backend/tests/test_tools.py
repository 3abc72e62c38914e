from conftest import FakeClock
from fileconv.conversion.models import Category
from fileconv.conversion.tools import ToolAvailabilityProbe


class CountingWhich:
    def __init__(self, installed):
        self.installed = dict(installed)
        self.calls = []

    def __call__(self, name):
        self.calls.append(name)
        return self.installed.get(name)


def test_image_needs_no_binary():
    which = CountingWhich({})
    probe = ToolAvailabilityProbe(which=which)
    assert probe.available(Category.IMAGE)
    assert probe.resolve(Category.IMAGE) is None
    assert which.calls == []


def test_falls_through_candidate_binaries():
    which = CountingWhich({"libreoffice": "/usr/bin/libreoffice"})
    probe = ToolAvailabilityProbe(which=which)
    assert probe.resolve(Category.DOC) == "/usr/bin/libreoffice"
    assert which.calls == ["soffice", "libreoffice"]


def test_results_are_cached_for_ttl():
    clock = FakeClock()
    which = CountingWhich({})
    probe = ToolAvailabilityProbe(ttl=5, clock=clock, which=which)

    assert not probe.available(Category.VECTOR)
    assert not probe.available(Category.VECTOR)
    assert which.calls == ["inkscape"]

    which.installed["inkscape"] = "/usr/bin/inkscape"
    clock.advance(4.9)
    assert not probe.available(Category.VECTOR)
    clock.advance(0.2)
    assert probe.available(Category.VECTOR)
    assert which.calls == ["inkscape", "inkscape"]


def test_invalidate_forces_a_fresh_lookup():
    which = CountingWhich({})
    probe = ToolAvailabilityProbe(ttl=60, which=which)
    assert not probe.available(Category.DOC)
    which.installed["soffice"] = "/opt/office/soffice"
    probe.invalidate()
    assert probe.available(Category.DOC)


def test_lookup_errors_mean_unavailable():
    def broken_which(name):
        raise PermissionError("PATH entry not readable")

    probe = ToolAvailabilityProbe(which=broken_which)
    assert probe.available(Category.VECTOR) is False
    assert probe.available(Category.VECTOR) is False


def test_helpers_and_snapshot():
    which = CountingWhich({"gs": "/usr/bin/gs", "convert": "/usr/bin/convert"})
    probe = ToolAvailabilityProbe(which=which)
    assert probe.resolve_helper("ghostscript") == "/usr/bin/gs"
    assert probe.resolve_helper("imagemagick") == "/usr/bin/convert"
    assert probe.resolve_helper("pdf2svg") is None

    snap = probe.snapshot()
    assert snap["image"] == {"required": [], "available": True, "path": None}
    assert snap["doc"]["required"] == ["soffice", "libreoffice"]
    assert snap["vector"]["available"] is False
