import random
import string

from conductor.errors import ConductorError
from conductor.PARSERS.compose_parser import ComposeParser
from conductor.PARSERS.env_parser import EnvParser
from conductor.UTILS.string_interpolation import EnvironmentInterpolator

rng = random.Random(20241017)


def random_string(length, alphabet=string.printable):
    return ''.join(rng.choice(alphabet) for _ in range(length))


def test_fuzz_compose_parser():
    parser = ComposeParser(context={})
    for _ in range(100):
        content = random_string(rng.randint(0, 1000))
        try:
            # Random junk must be rejected with a ConductorError, never a crash
            parser.parse_from_string(content)
        except ConductorError:
            pass


def test_fuzz_env_parser():
    for _ in range(100):
        content = random_string(rng.randint(0, 1000))
        values = EnvParser.parse_from_string(content)
        assert all(isinstance(v, str) for v in values.values())


def test_fuzz_interpolation():
    alphabet = "${}:-+?_AB01 $"
    context = {"A": "1", "B": ""}
    for _ in range(500):
        template = random_string(rng.randint(0, 40), alphabet)
        try:
            result = EnvironmentInterpolator.interpolate(template, context)
        except ConductorError:
            continue
        assert isinstance(result, str)


def test_edge_cases_parsers():
    compose_parser = ComposeParser(context={})

    # Empty string
    assert compose_parser.parse_from_string("").services == {}

    # Only whitespace
    assert compose_parser.parse_from_string("   \n\t  ").services == {}

    # Very long value
    config = compose_parser.parse_from_string("services:\n  a:\n    image: " + "a" * 10000)
    assert len(config.services["a"].image) == 10000

    # Deeply nested mapping under an unknown key
    nested = "x:\n" + "".join("  " * (i + 1) + f"k{i}:\n" for i in range(100))
    compose_parser.parse_from_string(nested)
