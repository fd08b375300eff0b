"""QR-Image CLI: generate, embed, verify and check QR images."""

import argparse
import sys

from PIL import Image, UnidentifiedImageError

from qrimg.config import ANCHOR_NAMES, MAX_SIZE_RATIO, MIN_SIZE_RATIO, Config
from qrimg.errors import QrImageError
from qrimg.logging import audit, get_logger, setup_logging

log = get_logger("cli")


def _size_ratio(value: str) -> float:
    ratio = float(value)
    if not MIN_SIZE_RATIO <= ratio <= MAX_SIZE_RATIO:
        raise argparse.ArgumentTypeError(f"QR size must be between {MIN_SIZE_RATIO} and {MAX_SIZE_RATIO}")
    return ratio


def _opacity(value: str) -> int:
    opacity = int(value)
    if not 0 <= opacity <= 255:
        raise argparse.ArgumentTypeError("opacity must be between 0 and 255")
    return opacity


def _config_from_args(args) -> Config:
    overrides = {
        "qr_size_ratio": args.qr_size,
        "qr_position": args.position,
        "qr_background_opacity": args.opacity,
        "max_validation_attempts": args.attempts,
    }
    if getattr(args, "width", None):
        overrides["image_width"] = args.width
        overrides["image_height"] = args.height
    if getattr(args, "api_key", None):
        overrides["unsplash_api_key"] = args.api_key
    return Config.from_env(**overrides)


def _open_image(path: str) -> Image.Image:
    try:
        img = Image.open(path)
        img.load()
    except (OSError, UnidentifiedImageError) as e:
        raise QrImageError(f"Cannot read image {path}: {e}") from e
    return img


def cmd_generate(args):
    """Fetch a background for a keyword, embed and verify the QR code."""
    from qrimg.pipeline import QrImageGenerator

    generator = QrImageGenerator(_config_from_args(args))
    print(f"Keyword: {args.keyword}")
    print(f"QR data: {args.data}")
    output = generator.generate_and_save(args.keyword, args.data, args.output)
    print(f"Saved to: {output} (QR code validated)")


def cmd_embed(args):
    """Embed a QR code into a local background image and verify it."""
    from qrimg.pipeline import QrImageGenerator, save_image

    generator = QrImageGenerator(_config_from_args(args))
    background = _open_image(args.background)
    image = generator.embed_and_validate(background, args.data)
    output = save_image(image, args.output)
    print(f"Saved to: {output} ({image.size[0]}x{image.size[1]}, QR code validated)")


def cmd_verify(args):
    """Verify that an image carries the expected payload."""
    from qrimg.validator import validate

    validate(_open_image(args.image), args.expected, args.attempts)
    print(f"PASS | {args.image} decodes to the expected data")


def cmd_check(args):
    """Report whether any QR code is detectable."""
    from qrimg.validator import quick_check

    found = quick_check(_open_image(args.image))
    print(f"{'FOUND' if found else 'NONE '} | {args.image}")
    return 0 if found else 1


def _add_embed_options(p: argparse.ArgumentParser):
    p.add_argument("-d", "--data", required=True, help="Data to encode in the QR code (URL, text, ...)")
    p.add_argument("-o", "--output", default="qr_output.png", help="Output file path")
    p.add_argument("--qr-size", type=_size_ratio, default=0.25, help="QR size as fraction of the shorter side (0.1-0.5)")
    p.add_argument("--position", default="bottom-right", choices=ANCHOR_NAMES, help="QR code position")
    p.add_argument("--opacity", type=_opacity, default=230, help="QR backing plate opacity (0-255)")
    p.add_argument("--attempts", type=int, default=3, help="Maximum validation attempts")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qrimg", description="QR-Image: validated QR codes on photo backgrounds")

    # Global logging flags
    parser.add_argument("-V", "--verbose", action="store_true", help="Enable DEBUG-level logging")
    parser.add_argument("--log-file", default=None, help="Write JSON logs to file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- generate ---
    p_gen = subparsers.add_parser("generate", help="Fetch a keyword background and embed a QR code")
    p_gen.add_argument("-k", "--keyword", required=True, help="Keyword for background image search")
    _add_embed_options(p_gen)
    p_gen.add_argument("--width", type=int, default=1920, help="Image width in pixels")
    p_gen.add_argument("--height", type=int, default=1080, help="Image height in pixels")
    p_gen.add_argument("--api-key", default=None, help="Unsplash API key (or set UNSPLASH_API_KEY)")

    # --- embed ---
    p_emb = subparsers.add_parser("embed", help="Embed a QR code into a local background image")
    p_emb.add_argument("background", help="Path to background image")
    _add_embed_options(p_emb)

    # --- verify ---
    p_ver = subparsers.add_parser("verify", help="Verify a QR image against expected data")
    p_ver.add_argument("image", help="Path to image")
    p_ver.add_argument("--expected", required=True, help="Expected decoded data")
    p_ver.add_argument("--attempts", type=int, default=3, help="Maximum validation attempts")

    # --- check ---
    p_chk = subparsers.add_parser("check", help="Report whether a QR code is detectable")
    p_chk.add_argument("image", help="Path to image")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging before any command runs
    setup_logging(level="DEBUG" if args.verbose else "INFO", log_file=args.log_file)
    audit("cli.start", logger=log, command=args.command, verbose=args.verbose)

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "generate": cmd_generate,
        "embed": cmd_embed,
        "verify": cmd_verify,
        "check": cmd_check,
    }
    try:
        status = commands[args.command](args) or 0
    except QrImageError as e:
        print(f"Error: {e}", file=sys.stderr)
        audit("cli.failed", logger=log, command=args.command, error=type(e).__name__)
        return 1

    audit("cli.done", logger=log, command=args.command, status=status)
    return status


if __name__ == "__main__":
    sys.exit(main())
