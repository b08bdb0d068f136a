import tempfile
import warnings
from pathlib import Path, PurePosixPath
from unittest import TestCase

from syncilias.events import CollectingEventSink, SyncWarning
from syncilias.ignore import IgnoreMatcher, compile_rules


class IgnoreMatcherTest(TestCase):
	def setUp(self) -> None:
		super().setUp()
		self.tmp = tempfile.TemporaryDirectory()
		self.addCleanup(self.tmp.cleanup)
		self.output = Path(self.tmp.name) / "ILIAS" / "SS 23"
		self.output.mkdir(parents=True)
		self.events = CollectingEventSink()

	def matcher(self) -> IgnoreMatcher:
		matcher = IgnoreMatcher(self.output, self.events)
		matcher.load()
		return matcher

	def test_no_rules(self):
		matcher = self.matcher()
		self.assertFalse(matcher.is_excluded(PurePosixPath("CourseA"), True))

	def test_only_one_course(self):
		(self.output / ".iliasignore").write_text("/*/\n!/CourseA/\n")
		matcher = self.matcher()

		self.assertFalse(matcher.is_excluded(PurePosixPath("CourseA"), True))
		self.assertTrue(matcher.is_excluded(PurePosixPath("CourseB"), True))
		# files at the top level are not directories
		self.assertFalse(matcher.is_excluded(PurePosixPath("notes.pdf"), False))

	def test_last_match_wins(self):
		(self.output / ".iliasignore").write_text("*.mp4\n!keep.mp4\n")
		matcher = self.matcher()

		self.assertTrue(matcher.is_excluded(PurePosixPath("CourseA/a.mp4"), False))
		self.assertFalse(matcher.is_excluded(PurePosixPath("CourseA/keep.mp4"), False))

	def test_directory_only_pattern(self):
		(self.output / ".iliasignore").write_text("Forum/\n")
		matcher = self.matcher()

		self.assertTrue(matcher.is_excluded(PurePosixPath("CourseA/Forum"), True))
		self.assertFalse(matcher.is_excluded(PurePosixPath("CourseA/Forum"), False))

	def test_ancestor_file_gets_prefix(self):
		(Path(self.tmp.name) / "ILIAS" / ".iliasignore").write_text("SS 23/CourseA/\n")
		matcher = self.matcher()

		self.assertTrue(matcher.is_excluded(PurePosixPath("CourseA"), True))
		self.assertFalse(matcher.is_excluded(PurePosixPath("CourseB"), True))

	def test_nearest_file_takes_precedence(self):
		(Path(self.tmp.name) / "ILIAS" / ".iliasignore").write_text("*.pdf\n")
		(self.output / ".iliasignore").write_text("!*.pdf\n")
		matcher = self.matcher()

		self.assertFalse(matcher.is_excluded(PurePosixPath("CourseA/a.pdf"), False))

	def test_directory_inside_tree(self):
		(self.output / "CourseA").mkdir()
		(self.output / "CourseA" / ".iliasignore").write_text("*.zip\n")
		matcher = self.matcher()
		matcher.add_directory(PurePosixPath("CourseA"))

		self.assertTrue(matcher.is_excluded(PurePosixPath("CourseA/Folder/all.zip"), False))
		# only applies below its own directory
		self.assertFalse(matcher.is_excluded(PurePosixPath("CourseB/all.zip"), False))

	def test_malformed_file_warns(self):
		(self.output / ".iliasignore").write_text("!\n*.mp4\n")
		matcher = self.matcher()

		self.assertTrue(self.events.of_type(SyncWarning))
		# the remaining rules still apply
		self.assertTrue(matcher.is_excluded(PurePosixPath("a.mp4"), False))


class CompileRulesTest(TestCase):
	def test_no_deprecated_pattern_factory(self):
		with warnings.catch_warnings(record=True) as caught:
			warnings.simplefilter("always")
			patterns, problems = compile_rules("*.mp4\n!keep.mp4\n# comment\n\n/Course/\n")

		self.assertEqual([w for w in caught if issubclass(w.category, DeprecationWarning)], [])
		self.assertEqual(problems, [])
		# comments and blank lines compile to nothing
		self.assertEqual([p.include for p in patterns], [True, False, True])
