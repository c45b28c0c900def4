"""Basic smoke tests."""

import tz_video_host
import tz_video_host.version


def test_version_defined() -> None:
    assert isinstance(tz_video_host.__version__, str)


def test_version_single_source_of_truth() -> None:
    assert tz_video_host.__version__ == tz_video_host.version.__version__


def test_help_epilog_mentions_version() -> None:
    assert tz_video_host.__version__ in tz_video_host.version.build_help_epilog()
