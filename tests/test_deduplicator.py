from pathlib import PurePath

from ilias_mirror.deduplicator import Deduplicator, name_variants


def test_first_object_keeps_its_name():
    dedup = Deduplicator(windows_paths=False)

    assert dedup.mark(PurePath("Course/a.txt"), "10") == PurePath("Course/a.txt")


def test_colliding_names_get_numbered():
    dedup = Deduplicator(windows_paths=False)

    first = dedup.mark(PurePath("Course/a.txt"), "10")
    second = dedup.mark(PurePath("Course/a.txt"), "11")
    third = dedup.mark(PurePath("Course/a.txt"), "12")

    assert (first, second, third) == (
        PurePath("Course/a.txt"),
        PurePath("Course/a_1.txt"),
        PurePath("Course/a_2.txt"),
    )


def test_names_with_spaces_use_a_space():
    variants = name_variants(PurePath("Lecture Notes.pdf"))

    assert next(variants) == PurePath("Lecture Notes 1.pdf")
    assert next(variants) == PurePath("Lecture Notes 2.pdf")


def test_same_object_gets_same_path_again():
    dedup = Deduplicator(windows_paths=False)

    dedup.mark(PurePath("a.txt"), "10")

    assert dedup.mark(PurePath("a.txt"), "10") == PurePath("a.txt")


def test_file_may_not_take_a_folder_path():
    dedup = Deduplicator(windows_paths=False)

    dedup.mark(PurePath("Sub/a.txt"), "10")

    assert dedup.mark(PurePath("Sub"), "11") == PurePath("Sub_1")


def test_case_insensitive_with_windows_paths():
    dedup = Deduplicator(windows_paths=True)

    dedup.mark(PurePath("Slides.pdf"), "10")

    assert dedup.mark(PurePath("slides.PDF"), "11") == PurePath("slides_1.PDF")


def test_case_sensitive_without_windows_paths():
    dedup = Deduplicator(windows_paths=False)

    dedup.mark(PurePath("Slides.pdf"), "10")

    assert dedup.mark(PurePath("slides.pdf"), "11") == PurePath("slides.pdf")


def test_windows_fixup():
    dedup = Deduplicator(windows_paths=True)

    assert dedup.fixup_path(PurePath("Week 1: Intro?.pdf")) == PurePath("Week 1_ Intro_.pdf")
    assert dedup.fixup_path(PurePath("CON.txt")) == PurePath("CON_.txt")
    assert dedup.fixup_path(PurePath("trailing.")) == PurePath("trailing._")


def test_no_fixup_without_windows_paths():
    dedup = Deduplicator(windows_paths=False)

    assert dedup.fixup_path(PurePath("Week 1: Intro?.pdf")) == PurePath("Week 1: Intro?.pdf")
