import tempfile
from pathlib import Path
from unittest import TestCase

from syncilias.events import CollectingEventSink, SyncWarning
from syncilias.filetree import Kind, Node, NodeState
from syncilias.ignore import IgnoreMatcher
from syncilias.reconcile import Decision, JobKind, Namer, Reconciler


def expanded(node: Node) -> Node:
	node.state = NodeState.EXPANDED
	return node


class ReconcilerTest(TestCase):
	def setUp(self) -> None:
		super().setUp()
		self.tmp = tempfile.TemporaryDirectory()
		self.addCleanup(self.tmp.cleanup)
		self.output = Path(self.tmp.name)
		self.events = CollectingEventSink()

		self.root = expanded(Node("", "desktop", Kind.DESKTOP))
		self.course = expanded(self.root.add_child("CourseA", "100", Kind.COURSE))
		self.course.add_child("fileX.pdf", "301", Kind.FILE, url="https://ilias.example.edu/x")
		self.folder = expanded(self.course.add_child("FolderB", "200", Kind.FOLDER))
		self.folder.add_child("fileY.txt", "302", Kind.FILE, url="https://ilias.example.edu/y")

	def reconciler(self, **kwargs) -> Reconciler:
		return Reconciler(self.output, events=self.events, **kwargs)

	def test_targets(self):
		plan = self.reconciler().reconcile(self.root)

		self.assertEqual(
			[j.target for j in plan.jobs],
			[self.output / "CourseA" / "fileX.pdf", self.output / "CourseA" / "FolderB" / "fileY.txt"],
		)
		self.assertEqual({j.decision for j in plan.jobs}, {Decision.FETCH})
		self.assertEqual({j.kind for j in plan.jobs}, {JobKind.FILE})
		self.assertEqual(plan.directories, [self.output / "CourseA", self.output / "CourseA" / "FolderB"])

	def test_existing_files_are_skipped(self):
		(self.output / "CourseA").mkdir()
		(self.output / "CourseA" / "fileX.pdf").write_bytes(b"x")

		plan = self.reconciler().reconcile(self.root)
		decisions = {j.target.name: j.decision for j in plan.jobs}
		self.assertEqual(decisions, {"fileX.pdf": Decision.SKIP, "fileY.txt": Decision.FETCH})
		self.assertEqual(len(plan.pending), 1)

		plan = self.reconciler(force=True).reconcile(self.root)
		decisions = {j.target.name: j.decision for j in plan.jobs}
		self.assertEqual(decisions["fileX.pdf"], Decision.REFRESH)

	def test_name_collisions(self):
		series = expanded(self.course.add_child("Vorlesung", "500", Kind.LECTURE_SERIES))
		series.add_child("Lecture_1.mp4", "e1", Kind.RECORDED_LECTURE)
		series.add_child("Lecture_1.mp4", "e2", Kind.RECORDED_LECTURE)

		plan = self.reconciler().reconcile(self.root)

		lectures = [j for j in plan.jobs if j.kind == JobKind.RECORDED_LECTURE]
		self.assertEqual(len(lectures), 2)
		self.assertNotEqual(lectures[0].target, lectures[1].target)
		for job in lectures:
			self.assertEqual(job.target.suffix, ".mp4")
			self.assertTrue(job.target.name.startswith("Lecture_1_"))
		self.assertEqual(len(self.events.of_type(SyncWarning)), 1)

	def test_collision_suffix_is_stable(self):
		series = expanded(self.course.add_child("Vorlesung", "500", Kind.LECTURE_SERIES))
		series.add_child("Lecture_1.mp4", "e1", Kind.RECORDED_LECTURE)
		series.add_child("lecture_1.mp4", "e2", Kind.RECORDED_LECTURE)

		first = [j.target for j in self.reconciler().reconcile(self.root).jobs]
		second = [j.target for j in self.reconciler().reconcile(self.root).jobs]
		self.assertEqual(first, second)

	def test_unexpanded_containers_are_not_mirrored(self):
		failed = self.root.add_child("Broken", "999", Kind.COURSE)
		failed.state = NodeState.FAILED
		self.course.add_child("Forum", "400", Kind.FORUM)

		plan = self.reconciler().reconcile(self.root)

		self.assertNotIn(self.output / "Broken", plan.directories)
		self.assertNotIn(self.output / "CourseA" / "Forum", plan.directories)

	def test_excluded_and_unsupported_nodes(self):
		self.course.add_child("Wiki", "600", Kind.UNSUPPORTED)
		self.folder.children[0].excluded = True

		plan = self.reconciler().reconcile(self.root)

		self.assertEqual([j.target.name for j in plan.jobs], ["fileX.pdf"])

	def test_ignore_rules_see_final_names(self):
		ignore = IgnoreMatcher()
		ignore.add_rules("*.txt\n")

		plan = self.reconciler(ignore=ignore).reconcile(self.root)

		self.assertEqual([j.target.name for j in plan.jobs], ["fileX.pdf"])
		self.assertTrue(self.folder.children[0].excluded)

	def test_skip_files(self):
		plan = self.reconciler(skip_files=True).reconcile(self.root)
		self.assertEqual(plan.jobs, [])
		self.assertEqual(len(plan.directories), 2)

	def test_unusable_name(self):
		self.course.add_child("..", "303", Kind.FILE)

		plan = self.reconciler().reconcile(self.root)

		self.assertEqual(len(plan.failures), 1)
		self.assertEqual(len(plan.jobs), 2)

	def test_course_names(self):
		namer = Namer({"CourseA": "Analysis", "200": "ignored, not a course"})
		plan = self.reconciler(namer=namer).reconcile(self.root)

		self.assertEqual(plan.directories[0], self.output / "Analysis")
		self.assertEqual(plan.directories[1], self.output / "Analysis" / "FolderB")

	def test_thread_post_count(self):
		forum = expanded(self.course.add_child("Forum", "400", Kind.FORUM))
		forum.add_child("9_Frage", "thr_9", Kind.THREAD, metadata={"posts": 2})
		thread_dir = self.output / "CourseA" / "Forum" / "9_Frage"
		thread_dir.mkdir(parents=True)
		(thread_dir / "1_mmuster_Frage.html").write_text("<p>Hallo</p>")

		[job] = [j for j in self.reconciler().reconcile(self.root).jobs if j.kind == JobKind.THREAD]
		self.assertEqual(job.decision, Decision.FETCH)

		(thread_dir / "2_Tutor_Re- Frage.html").write_text("<p>Hallo zurück</p>")
		[job] = [j for j in self.reconciler().reconcile(self.root).jobs if j.kind == JobKind.THREAD]
		self.assertEqual(job.decision, Decision.SKIP)

	def test_check_videos(self):
		series = expanded(self.course.add_child("Vorlesung", "500", Kind.LECTURE_SERIES))
		series.add_child("Lecture_1.mp4", "e1", Kind.RECORDED_LECTURE)
		(self.output / "CourseA" / "Vorlesung").mkdir(parents=True)
		(self.output / "CourseA" / "Vorlesung" / "Lecture_1.mp4").write_bytes(b"\0")

		[job] = [j for j in self.reconciler().reconcile(self.root).jobs if j.kind == JobKind.RECORDED_LECTURE]
		self.assertEqual(job.decision, Decision.SKIP)

		[job] = [
			j
			for j in self.reconciler(check_videos=True).reconcile(self.root).jobs
			if j.kind == JobKind.RECORDED_LECTURE
		]
		self.assertEqual(job.decision, Decision.REFRESH)
		self.assertTrue(job.check_only)

	def test_overview_pages(self):
		self.course.metadata["page"] = "<p>Willkommen</p>"

		plan = self.reconciler(save_ilias_pages=True).reconcile(self.root)

		overviews = [j for j in plan.jobs if j.kind == JobKind.OVERVIEW]
		self.assertEqual([j.target for j in overviews], [self.output / "CourseA" / "course.html"])
		# only with the option
		plan = self.reconciler().reconcile(self.root)
		self.assertFalse([j for j in plan.jobs if j.kind == JobKind.OVERVIEW])
