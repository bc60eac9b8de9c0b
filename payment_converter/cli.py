import sys

from common.logging import configure_logging
from conversion_observability.metrics import maybe_start_http_server

from .service import INPUT_FORMATS, ConversionService

USAGE = "Usage: python -m payment_converter.cli <MT103|NACHA> <input_file> <output_file>"


def _print_progress(message: str) -> None:
    print(f"Progress: {message}")


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 3:
        print(USAGE)
        print("Supported input formats: " + ", ".join(INPUT_FORMATS))
        return 1

    configure_logging(service_name="payment_converter")
    maybe_start_http_server()

    input_format, input_file, output_file = args
    result = ConversionService().convert_file(
        input_file, input_format, output_file, progress=_print_progress
    )
    print(result.model_dump_json(indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
