from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import webbrowser
from dataclasses import replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, localcontext
from pathlib import Path
from typing import Optional

from botocore.exceptions import BotoCoreError
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Vertical
from textual.screen import ModalScreen, Screen
from textual.widgets import Button, DataTable, Footer, Header, Input, Static
from textual.widgets.data_table import CellDoesNotExist

from .cache import OPERATION_BUCKETS, OPERATION_OBJECTS, ListingCache
from .config import AppConfig, ConfigStore, load_config, setup_logging
from .s3 import (
    BucketInfo,
    DownloadError,
    ObjectInfo,
    RegionMismatchError,
    S3Service,
    S3ViewError,
    bucket_console_url,
    object_console_url,
)

LOGGER = logging.getLogger(__name__)

SIZE_THRESHOLD = 1000
SIZE_UNITS = ("kB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB")
# smallest magnitude that reads as 1000.0 once rounded to one decimal
SIZE_ROLLOVER = Decimal("999.95")
# wide enough for every float and then some
SIZE_PRECISION = 400
ONE_MB = SIZE_THRESHOLD**2
HUNDRED_MB = 100 * ONE_MB
ONE_GB = SIZE_THRESHOLD**3
TEN_GB = 10 * ONE_GB


def _round_half_away(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def human_readable_size(num_bytes: float) -> str:
    """Format a byte count with decimal (SI) units, e.g. ``1500000 -> "2 MB"``.

    The unit is picked on the value rounded to one decimal place, so
    ``999960`` bytes reads as ``1 MB`` rather than ``1000 kB``. Arithmetic
    is done on ``Decimal`` so arbitrarily large counts stay in ``YB``.
    """
    with localcontext() as context:
        context.prec = SIZE_PRECISION
        value = Decimal(num_bytes)
        if abs(value) < SIZE_THRESHOLD:
            return f"{_round_half_away(value)} B"
        unit_index = -1
        while True:
            value /= SIZE_THRESHOLD
            unit_index += 1
            if abs(value) < SIZE_ROLLOVER or unit_index == len(SIZE_UNITS) - 1:
                break
        return f"{_round_half_away(value)} {SIZE_UNITS[unit_index]}"


def size_style(size: int) -> str:
    if size < ONE_MB:
        return "green"
    if size < HUNDRED_MB:
        return "#ffd700"
    if size < ONE_GB:
        return "#ff8c00"
    if size < TEN_GB:
        return "red"
    return "bold red"


def size_cell(size: int) -> Text:
    return Text(human_readable_size(size), style=size_style(size), justify="right")


def format_time(value: Optional[datetime]) -> str:
    if not value:
        return ""
    return value.strftime("%Y-%m-%d %H:%M")


def empty_view_text(title: str, description: str = "") -> Text:
    text = Text(title, style="bold")
    if description:
        text.append("\n\n")
        text.append(description, style="dim")
    return text


def error_title(exc: BaseException) -> str:
    return getattr(exc, "name", None) or type(exc).__name__


def error_message(exc: BaseException) -> str:
    return getattr(exc, "message", None) or str(exc)


def matches_filter(value: str, needle: str) -> bool:
    return not needle or needle.lower() in value.lower()


PROFILE_DEFAULT_SENTINEL = "__default__"


class ProfileSelectDialog(ModalScreen[Optional[str]]):
    """Pick the AWS profile every listing runs under.

    Dismisses with the chosen profile name, ``PROFILE_DEFAULT_SENTINEL`` for
    the default credential chain, or ``None`` when cancelled.
    """

    BINDINGS = [("escape", "cancel", "Cancel")]

    CSS = """
    ProfileSelectDialog {
        align: center middle;
        background: $background 60%;
    }

    #profile-dialog {
        width: 40;
        height: auto;
        max-height: 80%;
        padding: 1 2;
        border: round $accent;
        background: $surface;
    }

    #profile-title {
        width: 100%;
        margin-bottom: 1;
    }

    .profile-option {
        width: 100%;
        min-width: 0;
        border: none;
        background: transparent;
    }

    .profile-option.-active {
        color: $accent;
        text-style: bold;
    }
    """

    def __init__(self, profiles: list[Optional[str]], active: Optional[str]) -> None:
        super().__init__()
        self._profiles = profiles
        self._active = active
        self._choices: dict[str, str] = {}

    def compose(self) -> ComposeResult:
        title = Text("Active profile ", style="dim")
        title.append(self._active or "default", style="bold")
        with Vertical(id="profile-dialog"):
            yield Static(title, id="profile-title")
            for index, profile in enumerate(self._profiles):
                button_id = f"profile-option-{index}"
                self._choices[button_id] = profile or PROFILE_DEFAULT_SENTINEL
                button = Button(profile or "default", id=button_id, classes="profile-option")
                if profile == self._active:
                    button.add_class("-active")
                yield button

    def on_mount(self) -> None:
        active = self.query(".profile-option.-active")
        if active:
            self.set_focus(active.first())

    def on_button_pressed(self, event: Button.Pressed) -> None:
        choice = self._choices.get(event.button.id or "")
        if choice is not None:
            self.dismiss(choice)

    def action_cancel(self) -> None:
        self.dismiss(None)


class ListingScreen(Screen):
    """Shared layout: context bar, filter input, table and an empty view."""

    FILTER_PLACEHOLDER = "Filter..."

    def __init__(self) -> None:
        super().__init__()
        self._load_token = 0
        self._filter_text = ""
        self._error: Optional[BaseException] = None

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static("", id="context-bar")
        yield Input(placeholder=self.FILTER_PLACEHOLDER, id="filter")
        yield DataTable(id="listing-table", cursor_type="row", zebra_stripes=True)
        yield Static("", id="empty-view")
        yield Footer()

    def setup_listing(self) -> None:
        self.table = self.query_one("#listing-table", DataTable)
        self.filter_input = self.query_one("#filter", Input)
        self.empty_view = self.query_one("#empty-view", Static)
        self.context_bar = self.query_one("#context-bar", Static)
        self.empty_view.display = False
        self.set_focus(self.table)
        self.update_context_bar()

    def update_context_bar(self) -> None:
        service = self.app.service
        label = Text("profile ", style="dim")
        label.append(service.profile_label, style="bold")
        label.append("  region ", style="dim")
        label.append(service.known_region or "-", style="bold")
        self.context_bar.update(label)

    def show_empty(self, text: Text) -> None:
        self.table.display = False
        self.empty_view.update(text)
        self.empty_view.display = True

    def show_table(self) -> None:
        self.empty_view.display = False
        self.table.display = True

    def show_error(self, exc: BaseException) -> None:
        self._error = exc
        self.show_empty(empty_view_text(error_title(exc), error_message(exc)))
        self.set_focus(None)

    def row_key_for_cursor(self) -> Optional[str]:
        if self.table.row_count == 0:
            return None
        try:
            row_key, _ = self.table.coordinate_to_cell_key(self.table.cursor_coordinate)
        except CellDoesNotExist:
            return None
        return row_key.value

    def render_rows(self) -> None:
        raise NotImplementedError

    def on_input_changed(self, event: Input.Changed) -> None:
        needle = event.value.strip()
        if event.input.id != "filter" or needle == self._filter_text:
            return
        self._filter_text = needle
        if self._error is None:
            self.render_rows()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id == "filter" and self.table.display:
            self.set_focus(self.table)

    def action_focus_filter(self) -> None:
        self.set_focus(self.filter_input)


class BucketsScreen(ListingScreen):
    FILTER_PLACEHOLDER = "Filter buckets by name..."

    BINDINGS = [
        ("r", "refresh", "Refresh"),
        ("o", "open_browser", "Open in Browser"),
        ("c", "copy_name", "Copy Name"),
        ("p", "choose_profile", "Profile"),
        ("/", "focus_filter", "Filter"),
    ]

    def __init__(self) -> None:
        super().__init__()
        self.buckets: list[BucketInfo] = []

    def on_mount(self) -> None:
        self.setup_listing()
        self.table.add_columns("Name", "Created")
        self.reload()

    def reload(self, force: bool = False) -> None:
        self.run_worker(self.load_buckets(force=force), exclusive=True, group="buckets")

    async def load_buckets(self, force: bool = False) -> None:
        self._load_token += 1
        token = self._load_token
        app = self.app
        service = app.service
        profile = service.profile
        region = await service.resolve_region()
        if token != self._load_token:
            return
        self.update_context_bar()
        if force:
            await asyncio.to_thread(
                app.cache.invalidate, OPERATION_BUCKETS, (profile, region)
            )
            cached = None
        else:
            cached = await asyncio.to_thread(app.cache.load_buckets, profile, region)
        if token != self._load_token:
            return
        if cached is not None:
            self.set_buckets(cached)
        else:
            self.show_table()
            self.table.loading = True
        try:
            buckets = await service.list_buckets()
        except S3ViewError as exc:
            if token != self._load_token:
                return
            self.table.loading = False
            if cached is None:
                self.show_error(exc)
            else:
                app.notify(
                    f"Showing cached buckets. {error_message(exc)}",
                    title=error_title(exc),
                    severity="warning",
                )
            return
        if token != self._load_token:
            return
        self.table.loading = False
        self.set_buckets(buckets)
        await asyncio.to_thread(app.cache.save_buckets, profile, region, buckets)

    def set_buckets(self, buckets: list[BucketInfo]) -> None:
        self._error = None
        self.buckets = list(buckets)
        self.render_rows()

    def render_rows(self) -> None:
        self.table.clear()
        for bucket in self.buckets:
            if not matches_filter(bucket.name, self._filter_text):
                continue
            self.table.add_row(
                Text(bucket.name, style="bold"),
                format_time(bucket.creation_date),
                key=bucket.name,
            )
        if self.table.row_count:
            self.show_table()
        elif self.buckets:
            self.show_empty(empty_view_text("No matching buckets."))
        else:
            self.show_empty(empty_view_text("No buckets."))

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        bucket = event.row_key.value
        if bucket:
            self.app.push_screen(ObjectsScreen(bucket))

    def action_refresh(self) -> None:
        self.reload(force=True)

    def action_open_browser(self) -> None:
        bucket = self.row_key_for_cursor()
        if bucket:
            self.app.open_in_browser(bucket_console_url(bucket))

    def action_copy_name(self) -> None:
        bucket = self.row_key_for_cursor()
        if bucket:
            self.app.copy_to_clipboard(bucket)
            self.app.notify("Copied bucket name to clipboard.")

    def action_choose_profile(self) -> None:
        self.run_worker(self._choose_profile_flow(), exclusive=True, group="profile")

    async def _choose_profile_flow(self) -> None:
        app = self.app
        try:
            profiles = await asyncio.to_thread(app.service.available_profiles)
        except BotoCoreError as exc:
            LOGGER.exception("Could not read AWS profiles")
            app.notify(str(exc), title="Profiles unavailable", severity="error")
            return
        active = app.service.profile
        current = active or PROFILE_DEFAULT_SENTINEL
        selected = await app.push_screen_wait(ProfileSelectDialog(profiles, active))
        if selected is None or selected == current:
            return
        profile = None if selected == PROFILE_DEFAULT_SENTINEL else selected
        await asyncio.to_thread(app.switch_profile, profile)
        self.update_context_bar()
        self.reload()


class ObjectsScreen(ListingScreen):
    FILTER_PLACEHOLDER = "Filter objects by name..."

    BINDINGS = [
        ("escape", "back", "Back"),
        ("enter", "open", "Open"),
        ("r", "refresh", "Refresh"),
        ("o", "open_browser", "Open in Browser"),
        ("d", "download", "Download"),
        ("c", "copy_key", "Copy Key"),
        ("/", "focus_filter", "Filter"),
    ]

    def __init__(self, bucket: str) -> None:
        super().__init__()
        self.bucket = bucket
        self.objects: list[ObjectInfo] = []
        self._objects_by_key: dict[str, ObjectInfo] = {}

    def on_mount(self) -> None:
        self.setup_listing()
        self.sub_title = self.bucket
        self.table.add_column("Key")
        self.table.add_column("Size", width=10)
        self.table.add_column("Modified")
        self.reload()

    def reload(self, force: bool = False) -> None:
        self.run_worker(self.load_objects(force=force), exclusive=True, group="objects")

    async def load_objects(self, force: bool = False) -> None:
        self._load_token += 1
        token = self._load_token
        app = self.app
        service = app.service
        profile = service.profile
        region = await service.resolve_region()
        if token != self._load_token:
            return
        self.update_context_bar()
        params = (profile, region, self.bucket)
        if force:
            await asyncio.to_thread(app.cache.invalidate, OPERATION_OBJECTS, params)
            cached = None
        else:
            cached = await asyncio.to_thread(app.cache.load_objects, *params)
        if token != self._load_token:
            return
        if cached is not None:
            self.set_objects(cached)
        else:
            self.show_table()
            self.table.loading = True
        try:
            objects = await service.list_all_objects(self.bucket)
        except RegionMismatchError as exc:
            if token != self._load_token:
                return
            self.table.loading = False
            self.show_region_mismatch(exc)
            return
        except S3ViewError as exc:
            if token != self._load_token:
                return
            self.table.loading = False
            if cached is None:
                self.show_error(exc)
            else:
                app.notify(
                    f"Showing cached objects. {error_message(exc)}",
                    title=error_title(exc),
                    severity="warning",
                )
            return
        if token != self._load_token:
            return
        self.table.loading = False
        self.set_objects(objects)
        await asyncio.to_thread(app.cache.save_objects, *params, objects)

    def show_region_mismatch(self, exc: RegionMismatchError) -> None:
        self._error = exc
        region = self.app.service.known_region or "unknown"
        self.show_empty(
            empty_view_text(
                "Wrong region for bucket.",
                f"The {exc.bucket or self.bucket} cannot be accessed with your "
                f"current region ({region}).\n"
                "Hit Enter to open this bucket in the AWS Console.",
            )
        )
        self.set_focus(None)

    def set_objects(self, objects: list[ObjectInfo]) -> None:
        self._error = None
        self.objects = list(objects)
        self._objects_by_key = {info.key: info for info in self.objects}
        self.render_rows()

    def render_rows(self) -> None:
        self.table.clear()
        for info in self.objects:
            if not matches_filter(info.key, self._filter_text):
                continue
            self.table.add_row(
                info.key,
                size_cell(info.size),
                format_time(info.last_modified),
                key=info.key,
            )
        if self.table.row_count:
            self.show_table()
        elif self.objects:
            self.show_empty(empty_view_text("No matching objects."))
        else:
            self.show_empty(empty_view_text("This bucket is empty."))

    def object_for_cursor(self) -> Optional[ObjectInfo]:
        key = self.row_key_for_cursor()
        if key is None:
            return None
        return self._objects_by_key.get(key)

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        self.action_open_browser()

    def action_back(self) -> None:
        self.app.pop_screen()

    def action_open(self) -> None:
        if isinstance(self._error, RegionMismatchError):
            self.app.open_in_browser(bucket_console_url(self.bucket))
            return
        if self.table.display and self.table.row_count:
            self.action_open_browser()

    def action_refresh(self) -> None:
        self.reload(force=True)

    def action_open_browser(self) -> None:
        if isinstance(self._error, RegionMismatchError):
            self.app.open_in_browser(bucket_console_url(self.bucket))
            return
        info = self.object_for_cursor()
        if info is None:
            return
        self.app.open_in_browser(
            object_console_url(self.bucket, info.key, self.app.service.known_region)
        )

    def action_copy_key(self) -> None:
        info = self.object_for_cursor()
        if info is None:
            return
        self.app.copy_to_clipboard(info.key)
        self.app.notify("Copied object key to clipboard.")

    def action_download(self) -> None:
        info = self.object_for_cursor()
        if info is None:
            self.app.notify("Select an object to download.", severity="warning")
            return
        self.app.run_worker(self.app.download(self.bucket, info.key), group="download")


class S3Browser(App):
    TITLE = "S3"

    CSS = """
    #context-bar {
        height: 1;
        padding: 0 1;
        background: $surface;
        color: $text;
    }

    #filter {
        height: 3;
        border: round $panel;
    }

    #listing-table {
        height: 1fr;
        border: round $panel;
        scrollbar-gutter: stable;
    }

    #empty-view {
        height: 1fr;
        padding: 2 4;
        content-align: center middle;
        text-align: center;
        border: round $panel;
    }
    """

    BINDINGS = [("q", "quit", "Quit")]

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        downloads_dir: Optional[Path] = None,
        cache: Optional[ListingCache] = None,
        config_store: Optional[ConfigStore] = None,
    ) -> None:
        super().__init__()
        self.service = S3Service(
            profile=profile, region=region, downloads_dir=downloads_dir
        )
        self.cache = cache or ListingCache()
        self.config_store = config_store or ConfigStore()

    def on_mount(self) -> None:
        self.push_screen(BucketsScreen())

    def open_in_browser(self, url: str) -> None:
        LOGGER.debug("Opening %s", url)
        webbrowser.open(url)

    def switch_profile(self, profile: Optional[str]) -> None:
        self.service.set_profile(profile)
        config = self.config_store.load()
        self.config_store.save(replace(config, profile=self.service.profile))

    async def download(self, bucket: str, key: str) -> Optional[Path]:
        self.notify("Downloading...")
        try:
            destination = await self.service.download_object(bucket, key)
        except DownloadError as exc:
            LOGGER.warning("Download of s3://%s/%s failed: %s", bucket, key, exc.cause)
            self.notify("Failed to download", severity="error")
            return None
        self.notify("Downloaded to Downloads folder", title=str(destination))
        return destination


def _parse_object_path(value: str) -> tuple[str, str]:
    text = value.strip()
    if text.startswith("s3://"):
        text = text[len("s3://") :]
    bucket, _, key = text.partition("/")
    if not bucket or not key:
        raise ValueError(f"Expected bucket/key, got '{value}'")
    return bucket, key


def _service_from_config(config: AppConfig) -> S3Service:
    return S3Service(
        profile=config.profile,
        region=config.region,
        downloads_dir=config.downloads_path,
    )


def _print_error(exc: S3ViewError) -> None:
    if isinstance(exc, RegionMismatchError):
        print(
            f"Wrong region for bucket '{exc.bucket}'. "
            f"Open {bucket_console_url(exc.bucket)} instead.",
            file=sys.stderr,
        )
        return
    print(f"{error_title(exc)}: {error_message(exc)}", file=sys.stderr)


def _run_ls_command(service: S3Service, bucket: Optional[str]) -> int:
    try:
        if bucket:
            objects = asyncio.run(service.list_all_objects(bucket))
        else:
            buckets = asyncio.run(service.list_buckets())
    except S3ViewError as exc:
        _print_error(exc)
        return 1
    if bucket:
        for info in objects:
            print(f"{human_readable_size(info.size):>8}\t{info.key}")
    else:
        for entry in buckets:
            print(f"{format_time(entry.creation_date):16}\t{entry.name}")
    return 0


def _run_get_command(service: S3Service, path: str) -> int:
    try:
        bucket, key = _parse_object_path(path)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    try:
        destination = asyncio.run(service.download_object(bucket, key))
    except DownloadError as exc:
        _print_error(exc)
        return 1
    print(destination)
    return 0


def _run_browser_command(config: AppConfig) -> int:
    app = S3Browser(
        profile=config.profile,
        region=config.region,
        downloads_dir=config.downloads_path,
        cache=ListingCache(ttl_seconds=config.cache_ttl_seconds),
    )
    app.run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="s3view", description="Browse S3 buckets and objects"
    )
    parser.add_argument(
        "-p",
        "--profile",
        help="AWS profile to use (defaults to AWS_PROFILE or the default profile)",
    )
    parser.add_argument(
        "--region",
        help="AWS region override for the S3 client",
    )
    parser.add_argument(
        "--downloads-dir",
        help="Directory downloads are written to (defaults to ~/Downloads)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Write debug logs to the log file",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Log file path (logging is off unless this or --debug is given)",
    )
    subparsers = parser.add_subparsers(dest="command")
    ls_parser = subparsers.add_parser(
        "ls", help="List buckets, or every object in one bucket"
    )
    ls_parser.add_argument("bucket", nargs="?", help="Bucket to list")
    get_parser = subparsers.add_parser(
        "get", help="Download one object into the downloads directory"
    )
    get_parser.add_argument("path", help="bucket/key or s3://bucket/key")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, log_file=args.log_file)
    config = load_config().with_overrides(
        profile=args.profile,
        region=args.region,
        downloads_dir=args.downloads_dir,
    )
    LOGGER.debug("Starting with profile=%s region=%s", config.profile, config.region)
    if args.command == "ls":
        return _run_ls_command(_service_from_config(config), args.bucket)
    if args.command == "get":
        return _run_get_command(_service_from_config(config), args.path)
    return _run_browser_command(config)


if __name__ == "__main__":
    sys.exit(main())
