from dialog import DialogLine, LineStatus, WordState, WordStatus, parse_dialog_script


def test_parse_script_splits_character_and_words():
    lines = parse_dialog_script("Anna: Hello, how are you?\n\nJOHN: Fine: thanks.\nNice to meet you.")

    assert [line.character for line in lines] == ["anna", "john", "anna"]
    assert lines[1].text == "Fine: thanks."
    assert [w.word for w in lines[0].words] == ["Hello,", "how", "are", "you?"]
    assert [line.order for line in lines] == [0, 1, 2]
    assert all(line.status is LineStatus.PENDING for line in lines)


def test_parse_script_skips_lines_without_words():
    lines = parse_dialog_script("anna:\njohn:   \n   \nanna: ok")

    assert len(lines) == 1
    assert lines[0].order == 0


def test_reset_and_apply_words_work_in_place():
    line = DialogLine.from_text("red fox")
    first = line.words[0]

    line.apply_words([
        WordStatus(word="red", status=WordState.CORRECT, was_said=True),
        WordStatus(word="fox", status=WordState.INCORRECT),
    ])
    assert line.words[0] is first
    assert first.status is WordState.CORRECT and first.was_said

    line.reset_words()
    assert [w.status for w in line.words] == [WordState.PENDING, WordState.PENDING]
    assert not first.was_said
