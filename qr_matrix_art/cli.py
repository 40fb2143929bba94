"""CLI entry point for QR Matrix Art."""

import argparse
import json
import logging
import os
import sys
import time

from qr_matrix_art import TARGET_SIZE, __version__
from qr_matrix_art.errors import QRMatrixArtError
from qr_matrix_art.settings import ArtStyle, BlendMode, DetectionMode, Position


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging from every pipeline stage",
    )
    return common


def _output_options() -> argparse.ArgumentParser:
    output = argparse.ArgumentParser(add_help=False)
    output.add_argument(
        "--output", "-o",
        required=True,
        help="Output image path (PNG unless the extension says otherwise)",
    )
    output.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite output file without prompting",
    )
    return output


def _detection_options() -> argparse.ArgumentParser:
    detection = argparse.ArgumentParser(add_help=False)
    detection.add_argument(
        "--mode",
        default=DetectionMode.RINGS.value,
        choices=[m.value for m in DetectionMode],
        help="Finder pattern detection: 'rings' verifies the 1:1:3:1:1 structure, "
             "'density' only looks at dark fraction. Default: rings",
    )
    detection.add_argument(
        "--no-blur",
        action="store_true",
        help="Skip the Gaussian blur before thresholding",
    )
    detection.add_argument(
        "--full-frame",
        action="store_true",
        help="Fit the module grid to the whole image instead of the detected code area",
    )
    return detection


def _matrix_source(parser: argparse.ArgumentParser) -> None:
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("image", nargs="?", default=None, help="Photo or raster of a QR code")
    source.add_argument("--url", default=None, help="URL or text to encode instead of reading an image")


def create_parser() -> argparse.ArgumentParser:
    common, output, detection = _common_options(), _output_options(), _detection_options()
    styles = [s.value for s in ArtStyle]

    parser = argparse.ArgumentParser(
        prog="qr-matrix-art",
        description="Recover QR module grids from photos and re-render them as art.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print the module matrix recovered from a photo
  qr-matrix-art extract photo.jpg

  # Find the best spot to hide a QR code in a background
  qr-matrix-art analyze background.jpg

  # Blend a QR code into a photo with recommended settings
  qr-matrix-art blend qr.png background.jpg -o blended.png --auto

  # Draw a winter village whose houses are the dark modules
  qr-matrix-art art --url "https://example.com" --style winter-village -o village.png

  # AI generation with fidelity checks and up to 5 attempts
  qr-matrix-art generate --url "https://example.com" --style city-night -o city.png --api local
        """,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # extract
    extract = sub.add_parser("extract", parents=[common, detection], help="Recover the module matrix from an image")
    extract.add_argument("image", help="Photo or raster of a QR code")
    extract.add_argument("--json", action="store_true", help="Print the result as JSON")

    # analyze
    analyze = sub.add_parser("analyze", parents=[common, detection], help="Score background regions for hiding a QR code")
    analyze.add_argument("background", help="Background image")
    analyze.add_argument("--qr", default=None, help="Also recover and summarize the matrix of this QR image")

    # blend
    blend = sub.add_parser("blend", parents=[common, output], help="Composite a QR code into a background photo")
    blend.add_argument("qr", help="QR code image")
    blend.add_argument("background", help="Background image")
    blend.add_argument("--auto", action="store_true", help="Use the settings recommended by background analysis")
    blend.add_argument("--opacity", type=float, default=0.3, help="Base QR opacity (0.0-1.0). Default: 0.3")
    blend.add_argument(
        "--blend-mode",
        default=BlendMode.MULTIPLY.value,
        choices=[m.value for m in BlendMode],
        help="Blend formula for low-texture areas. Default: multiply",
    )
    blend.add_argument(
        "--position",
        default=Position.CENTER.value,
        choices=[p.value for p in Position],
        help="Where to place the QR code. Default: center",
    )
    blend.add_argument("--size", type=int, default=150, help="QR size in pixels. Default: 150")
    blend.add_argument(
        "--edge-strength",
        type=float,
        default=0.5,
        help="Opacity boost for edge and near-black/white QR pixels (0.0-1.0). Default: 0.5",
    )
    blend.add_argument(
        "--texture-adaption",
        type=float,
        default=0.7,
        help="Opacity reduction over busy background (0.0-1.0). Default: 0.7",
    )

    # art
    art = sub.add_parser("art", parents=[common, output, detection], help="Render procedural art from a QR matrix")
    _matrix_source(art)
    art.add_argument("--style", default=ArtStyle.WINTER_VILLAGE.value, choices=styles, help="Art style. Default: winter-village")
    art.add_argument("--size", type=int, default=TARGET_SIZE, help=f"Output size in pixels. Default: {TARGET_SIZE}")
    art.add_argument("--border", type=int, default=4, help="Quiet zone in modules. Default: 4")
    art.add_argument("--denoise", type=float, default=0.0, help="Softening strength (0.0-1.0). Default: 0.0")
    art.add_argument("--seed", type=int, default=0, help="Random seed for element variation. Default: 0")
    art.add_argument("--no-enforce", action="store_true", help="Skip the per-module contrast correction")
    art.add_argument("--no-lighting", action="store_true", help="Skip the lighting wash over light modules")
    art.add_argument("--no-verify", action="store_true", help="Skip QR code scannability verification of the output")

    # generate
    generate = sub.add_parser(
        "generate", parents=[common, output, detection], help="AI generation with matrix-fidelity retries",
    )
    _matrix_source(generate)
    generate.add_argument("--style", default=ArtStyle.WINTER_VILLAGE.value, choices=styles, help="Prompt style. Default: winter-village")
    generate.add_argument("--prompt", default=None, help="Custom scene description (replaces the style prompt)")
    generate.add_argument(
        "--api",
        default=None,
        choices=["huggingface", "illusion", "replicate", "local"],
        help="Generation backend. Default: $QR_MATRIX_ART_BACKEND or huggingface",
    )
    generate.add_argument("--size", type=int, default=TARGET_SIZE, help=f"Control image size. Default: {TARGET_SIZE}")
    generate.add_argument(
        "--controlnet-scale",
        type=float,
        default=1.1,
        help="ControlNet conditioning scale (0.5-2.0). Higher = more scannable, less artistic. Default: 1.1",
    )
    generate.add_argument("--guidance-scale", type=float, default=7.5, help="Classifier-free guidance scale. Default: 7.5")
    generate.add_argument("--strength", type=float, default=0.9, help="Denoising strength (0.0-1.0). Default: 0.9")
    generate.add_argument("--seed", type=int, default=-1, help="Random seed. -1 for random. Default: -1")
    generate.add_argument("--max-attempts", type=int, default=5, help="Attempt budget. Default: 5")
    generate.add_argument(
        "--max-error-rate",
        type=float,
        default=0.05,
        help="Largest fraction of wrong modules that still counts as a match. Default: 0.05",
    )
    generate.add_argument("--timeout", type=float, default=300, help="Per-attempt timeout in seconds. Default: 300")

    return parser


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _detection_config(args):
    from qr_matrix_art.settings import DetectionConfig

    overrides = {"mode": args.mode}
    if args.no_blur:
        overrides["blur_sigma"] = None
    if args.full_frame:
        overrides["crop_to_content"] = False
    return DetectionConfig(**overrides)


def _confirm_overwrite(args) -> bool:
    if os.path.exists(args.output) and not args.overwrite:
        response = input(f"  Output file '{args.output}' already exists. Overwrite? [y/N] ")
        if response.lower() not in ("y", "yes"):
            print("  Aborted.")
            return False
    return True


def _resolve_matrix(args):
    """Matrix from --url or recovered from the positional image."""
    from qr_matrix_art.image_utils import load_raster
    from qr_matrix_art.matrix import QRMatrix
    from qr_matrix_art.pipeline import recover_matrix

    if args.url:
        matrix = QRMatrix.from_data(args.url)
        print(f"  ✓ Encoded {len(args.url)} chars as a {matrix.size}x{matrix.size} matrix")
        return matrix

    recovery = recover_matrix(load_raster(args.image), _detection_config(args))
    grid = recovery.grid
    print(f"  ✓ Recovered {grid.module_count}x{grid.module_count} matrix (version ~{grid.version})")
    return recovery.matrix


def _report_scan(image) -> None:
    from qr_matrix_art.image_utils import VerifyResult, verify_qr_scannable

    print("\n  Verifying QR code scannability...")
    result, decoded = verify_qr_scannable(image)
    if result == VerifyResult.SCANNABLE:
        print(f"  ✓ QR code is SCANNABLE! Decoded: {decoded}")
    elif result == VerifyResult.SKIPPED:
        print("  ⊘ Verification skipped (pyzbar not installed)")
        print("    Install with: pip install pyzbar")
    else:
        print("  ⚠️  WARNING: QR code may not be scannable.")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_extract(args) -> int:
    from qr_matrix_art.analysis import format_summary
    from qr_matrix_art.image_utils import load_raster
    from qr_matrix_art.pipeline import recover_matrix

    recovery = recover_matrix(load_raster(args.image), _detection_config(args))
    if args.json:
        print(json.dumps(recovery.to_dict()))
        return 0

    print(format_summary(recovery=recovery))
    print()
    print(recovery.matrix.to_text())
    return 0


def cmd_analyze(args) -> int:
    from qr_matrix_art.analysis import analyze_background, format_summary
    from qr_matrix_art.image_utils import load_raster
    from qr_matrix_art.pipeline import recover_matrix

    recovery = None
    if args.qr:
        recovery = recover_matrix(load_raster(args.qr), _detection_config(args))
    background = analyze_background(load_raster(args.background))
    print(format_summary(recovery=recovery, background=background))
    return 0


def cmd_blend(args) -> int:
    from qr_matrix_art.analysis import analyze_background
    from qr_matrix_art.compositor import composite
    from qr_matrix_art.image_utils import load_raster, save_output
    from qr_matrix_art.settings import RenderSettings

    if not _confirm_overwrite(args):
        return 0

    print(f"\n[1/3] Loading images: {args.qr}, {args.background}")
    qr = load_raster(args.qr)
    background = load_raster(args.background)
    print(f"  ✓ Background is {background.width}x{background.height}")

    print("\n[2/3] Choosing blend settings...")
    if args.auto:
        analysis = analyze_background(background)
        settings = analysis.recommended
        print(f"  ✓ Best hiding position: {analysis.best_region.position.value}")
    else:
        settings = RenderSettings(
            opacity=args.opacity,
            blend_mode=args.blend_mode,
            position=args.position,
            size_px=args.size,
            edge_strength=args.edge_strength,
            texture_adaption=args.texture_adaption,
        )
    print(f"  Opacity:         {settings.opacity}")
    print(f"  Blend mode:      {settings.blend_mode.value}")
    print(f"  Position:        {settings.position.value}")
    print(f"  Size:            {settings.size_px}px")

    print(f"\n[3/3] Compositing and saving to: {args.output}")
    result = composite(qr.to_pil(), background.to_pil(), settings)
    output_path = save_output(result, args.output)
    print(f"  ✓ Saved: {output_path}")

    print(f"\n✅ Done! Your blended image is at: {output_path}")
    return 0


def cmd_art(args) -> int:
    from qr_matrix_art.art import render_art
    from qr_matrix_art.image_utils import save_output
    from qr_matrix_art.settings import ArtSettings

    if not _confirm_overwrite(args):
        return 0

    print("\n[1/3] Preparing QR matrix...")
    matrix = _resolve_matrix(args)

    settings = ArtSettings(
        style=args.style,
        size_px=args.size,
        border_modules=args.border,
        denoising_strength=args.denoise,
        seed=args.seed,
        enforce_contrast=not args.no_enforce,
        lighting=not args.no_lighting,
    )
    print(f"\n[2/3] Rendering {settings.style.value} art ({settings.size_px}x{settings.size_px})...")
    image = render_art(matrix, settings)
    print("  ✓ Rendered")

    print(f"\n[3/3] Saving output to: {args.output}")
    output_path = save_output(image, args.output)
    print(f"  ✓ Saved: {output_path}")

    if not args.no_verify:
        _report_scan(image)

    print(f"\n✅ Done! Your QR art is at: {output_path}")
    return 0


def cmd_generate(args) -> int:
    from qr_matrix_art.api_client import GenerationRequest, get_client
    from qr_matrix_art.art import render_control_image
    from qr_matrix_art.generation import MatrixVerifier, RetryPolicy, build_prompt, run_generation
    from qr_matrix_art.image_utils import cleanup_temp_files, save_output, save_temp_png

    if not _confirm_overwrite(args):
        return 0

    temp_files: list[str] = []
    try:
        print("\n[1/4] Preparing QR matrix...")
        matrix = _resolve_matrix(args)

        print("\n[2/4] Rendering control image...")
        control_path = save_temp_png(render_control_image(matrix, args.size), prefix="qr_matrix_art_control_")
        temp_files.append(control_path)
        print(f"  ✓ Control image ready ({args.size}x{args.size})")

        print("\n[3/4] Generating artistic QR code...")
        client = get_client(args.api, timeout=args.timeout, show_progress=True)
        prompt = build_prompt(args.style, matrix, custom=args.prompt)
        print(f"  Backend:         {client.name()}")
        print(f"  Prompt:          {prompt}")
        print(f"  ControlNet:      {args.controlnet_scale}")
        print(f"  Strength:        {args.strength}")
        print(f"  Seed:            {'random' if args.seed == -1 else args.seed}")
        print(f"  Attempts:        up to {args.max_attempts}")
        print()

        request = GenerationRequest(
            prompt=prompt,
            control_image_path=control_path,
            size=args.size,
            controlnet_scale=args.controlnet_scale,
            guidance_scale=args.guidance_scale,
            strength=args.strength,
            seed=args.seed,
        )
        start_time = time.time()
        outcome = run_generation(
            client,
            request,
            MatrixVerifier(matrix, args.max_error_rate),
            RetryPolicy(max_attempts=args.max_attempts),
            prompt_builder=lambda emphasis: build_prompt(args.style, matrix, custom=args.prompt, emphasis=emphasis),
        )
        temp_files.append(outcome.image_path)
        elapsed = time.time() - start_time
        for record in outcome.attempts:
            rate = "n/a" if record.error_rate is None else f"{record.error_rate:.1%}"
            print(f"  Attempt {record.index}: {record.result.value} (module errors: {rate})")
        print(f"  ✓ Generation finished in {elapsed:.1f}s")

        print(f"\n[4/4] Saving output to: {args.output}")
        output_path = save_output(outcome.image, args.output)
        print(f"  ✓ Saved: {output_path}")

        if outcome.succeeded:
            print(f"\n✅ Done! Your artistic QR code is at: {output_path}")
        else:
            print(
                f"\n  ⚠️  WARNING: no attempt matched the QR matrix; best result has "
                f"{outcome.error_rate:.1%} wrong modules.\n"
                "     Try increasing --controlnet-scale or decreasing --strength.",
                file=sys.stderr,
            )
            print(f"\n⚠️  Degraded result saved at: {output_path}")
        return 0
    finally:
        cleanup_temp_files(*temp_files)


COMMANDS = {
    "extract": cmd_extract,
    "analyze": cmd_analyze,
    "blend": cmd_blend,
    "art": cmd_art,
    "generate": cmd_generate,
}


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    if not getattr(args, "json", False):
        print(f"QR Matrix Art v{__version__}")
        print("=" * 50)

    try:
        return COMMANDS[args.command](args)
    except (QRMatrixArtError, ValueError, FileNotFoundError) as e:
        print(f"\n  ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
