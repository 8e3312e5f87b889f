import pytest

from conductor.PARSERS.env_parser import EnvParser


def test_parse_from_string():
    content = """
    KEY1=VALUE1
    KEY2 = VALUE2
    # This is a comment
    KEY3="VALUE3" # Trailing comment
    KEY4='VALUE4'
    export KEY6=exported
    """
    env = EnvParser.parse_from_string(content)
    assert env['KEY1'] == 'VALUE1'
    assert env['KEY2'] == 'VALUE2'
    assert env['KEY3'] == 'VALUE3'
    assert env['KEY4'] == 'VALUE4'
    assert env['KEY6'] == 'exported'
    assert 'KEY5' not in env


def test_values_are_not_expanded():
    env = EnvParser.parse_from_string("A=1\nB=${A}\n")
    assert env['B'] == '${A}'


def test_key_without_value_is_dropped():
    env = EnvParser.parse_from_string("EMPTY=\nBARE\n")
    assert env == {'EMPTY': ''}


def test_parse_file(tmp_path):
    path = tmp_path / ".env"
    path.write_text("PASSWORD='s3cr#t'\n")
    assert EnvParser.parse(str(path)) == {'PASSWORD': 's3cr#t'}


def test_parse_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        EnvParser.parse(str(tmp_path / "missing.env"))
