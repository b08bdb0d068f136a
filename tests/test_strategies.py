import tempfile
from pathlib import Path
from typing import List
from unittest import IsolatedAsyncioTestCase

from syncilias.errors import HttpError
from syncilias.events import CollectingEventSink, SyncWarning
from syncilias.filetree import Kind, Node
from syncilias.ratelimit import RateLimiter
from syncilias.reconcile import Decision, JobKind, SyncJob
from syncilias.session import IliasSession
from syncilias.strategies import Retriever
from tests.fakeportal import BASE_URL, FakePortal, credentials

THREAD_URL = "ilias.php?ref_id=5&cmd=viewThread&thr_pk=9"

THREAD_PAGE_1 = """<html><body>
<table><tbody><tr><td><a href="ilias.php?ref_id=5&amp;cmd=viewThread&amp;thr_pk=9&amp;page=1">&gt;&gt;</a></td></tr></tbody></table>
<div class="ilFrmPostRow">
	<div class="ilFrmPostTitle">Frage zu Blatt 1</div>
	<span class="small">Max Mustermann | mmuster | 01. Jan 2023</span>
	<div class="ilFrmPostContentContainer">
		<a id="1234"></a><p>Hallo</p>
		<img src="./data/produktiv/mobs/mm_555/plot.png?il_wac_token=abc">
		<div class="ilFrmPostAttachmentsContainer">
			<a href="ilias.php?cmd=viewThread&amp;file=77&amp;thr_pk=9">loesung.pdf</a>
			<a href="ilias.php?cmd=viewThread&amp;file=78&amp;thr_pk=9">kaputt.pdf</a>
		</div>
	</div>
</div>
</body></html>"""

THREAD_PAGE_2 = """<html><body>
<div class="ilFrmPostRow">
	<div class="ilFrmPostTitle">Re: Frage zu Blatt 1</div>
	<span class="small">Tutor | Pseudonym | 02. Jan 2023</span>
	<div class="ilFrmPostContentContainer"><a id="1235"></a><p>Siehe Folie 3</p></div>
</div>
</body></html>"""


def player_page(*sources: str) -> str:
	streams = ",".join(
		f'{{"content":"s{i}","sources":{{"mp4":[{{"src":"{src}"}}]}}}}' for i, src in enumerate(sources)
	)
	return (
		"<html><body>\n<script>\n"
		f'xoctPaellaPlayer.init({{"streams":[{streams}]}},\n{{"config": 1}})\n'
		"</script>\n</body></html>"
	)


class FakeMuxer:
	def __init__(self) -> None:
		self.inputs: List[Path] = []

	async def combine(self, inputs: List[Path], output: Path) -> None:
		self.inputs = list(inputs)
		output.write_bytes(b"".join(p.read_bytes() for p in inputs))


class RetrieverTest(IsolatedAsyncioTestCase):
	async def asyncSetUp(self) -> None:
		self.tmp = tempfile.TemporaryDirectory()
		self.addCleanup(self.tmp.cleanup)
		self.output = Path(self.tmp.name)
		self.portal = FakePortal()
		self.session = IliasSession(
			BASE_URL, RateLimiter(1000), credentials, transport=self.portal.transport
		)
		await self.session.login()
		self.events = CollectingEventSink()
		self.muxer = FakeMuxer()

	async def asyncTearDown(self) -> None:
		await self.session.client.aclose()

	def retriever(self, **kwargs) -> Retriever:
		return Retriever(self.session, self.events, muxer=self.muxer, progress=False, **kwargs)

	def job(self, href: str, name: str, kind: Kind, decision: Decision = Decision.FETCH, **kwargs) -> SyncJob:
		node = Node(name, href, kind, url=self.session.url(href))
		job_kind = {
			Kind.FILE: JobKind.FILE,
			Kind.THREAD: JobKind.THREAD,
			Kind.RECORDED_LECTURE: JobKind.RECORDED_LECTURE,
			Kind.LINK: JobKind.LINK,
		}[kind]
		return SyncJob(node, self.output / name, decision, job_kind, **kwargs)

	async def test_file(self):
		self.portal.add_file("goto.php?target=file_1_download", b"%PDF-1.4 slides")
		job = self.job("goto.php?target=file_1_download", "slides.pdf", Kind.FILE)

		await self.retriever().retrieve(job)

		self.assertEqual(job.target.read_bytes(), b"%PDF-1.4 slides")
		self.assertFalse((self.output / "slides.pdf.temp").exists())

	async def test_stale_partial_download(self):
		# the portal ignores ranges, so the partial file is started over
		self.portal.add_file("goto.php?target=file_1_download", b"complete")
		(self.output / "slides.pdf.temp").write_bytes(b"garbage")
		job = self.job("goto.php?target=file_1_download", "slides.pdf", Kind.FILE)

		await self.retriever().retrieve(job)

		self.assertEqual(job.target.read_bytes(), b"complete")

	async def test_partial_download_is_resumed(self):
		self.portal.ranges = True
		self.portal.add_file("goto.php?target=file_1_download", b"%PDF-1.4 slides")
		# the first eight bytes are already on disk, only the rest is requested
		(self.output / "slides.pdf.temp").write_bytes(b"%PDF-1.x")
		job = self.job("goto.php?target=file_1_download", "slides.pdf", Kind.FILE)

		await self.retriever().retrieve(job)

		self.assertEqual(job.target.read_bytes(), b"%PDF-1.x slides")
		self.assertFalse((self.output / "slides.pdf.temp").exists())

	async def test_missing_file(self):
		job = self.job("goto.php?target=file_2_download", "gone.pdf", Kind.FILE)
		with self.assertRaises(HttpError):
			await self.retriever().retrieve(job)
		self.assertFalse(job.target.exists())

	async def test_thread(self):
		self.portal.add_page(THREAD_URL, THREAD_PAGE_1)
		self.portal.add_page(THREAD_URL + "&page=1", THREAD_PAGE_2)
		self.portal.add_file("data/produktiv/mobs/mm_555/plot.png?il_wac_token=abc", b"PNG")
		self.portal.add_file("ilias.php?cmd=viewThread&file=77&thr_pk=9", b"%PDF loesung")
		job = self.job(THREAD_URL, "9_Frage zu Blatt 1", Kind.THREAD)

		await self.retriever().retrieve(job)

		files = sorted(p.name for p in job.target.iterdir())
		self.assertEqual(
			files,
			[
				"1234_555_plot.png",
				"1234_loesung.pdf",
				"1234_mmuster_Frage zu Blatt 1.html",
				"1235_Tutor_Re- Frage zu Blatt 1.html",
			],
		)
		self.assertIn("<p>Hallo</p>", (job.target / "1234_mmuster_Frage zu Blatt 1.html").read_text())
		# the missing attachment is reported, the rest of the thread still synced
		[warning] = self.events.of_type(SyncWarning)
		self.assertIn("1234_kaputt.pdf", warning.message)

	async def test_thread_keeps_existing_posts(self):
		self.portal.add_page(THREAD_URL, THREAD_PAGE_2)
		job = self.job(THREAD_URL, "9_Frage", Kind.THREAD)
		job.target.mkdir()
		post = job.target / "1235_Tutor_Re- Frage zu Blatt 1.html"
		post.write_text("edited locally")

		await self.retriever().retrieve(job)
		self.assertEqual(post.read_text(), "edited locally")

		job.decision = Decision.REFRESH
		await self.retriever().retrieve(job)
		self.assertIn("Siehe Folie 3", post.read_text())

	async def test_single_stream_lecture(self):
		self.portal.add_page("ilias.php?ref_id=8&cmd=streamVideo&id=e1", player_page("https://ilias.example.edu/v/a.mp4"))
		self.portal.add_file("v/a.mp4", b"video")
		job = self.job("ilias.php?ref_id=8&cmd=streamVideo&id=e1", "Lecture_1.mp4", Kind.RECORDED_LECTURE)

		await self.retriever().retrieve(job)

		self.assertEqual(job.target.read_bytes(), b"video")

	async def add_two_stream_lecture(self) -> SyncJob:
		self.portal.add_page(
			"ilias.php?ref_id=8&cmd=streamVideo&id=e2",
			player_page("https://ilias.example.edu/v/p.mp4", "https://ilias.example.edu/v/s.mp4"),
		)
		self.portal.add_file("v/p.mp4", b"presenter")
		self.portal.add_file("v/s.mp4", b"slides")
		return self.job("ilias.php?ref_id=8&cmd=streamVideo&id=e2", "Lecture_2.mp4", Kind.RECORDED_LECTURE)

	async def test_multi_stream_lecture(self):
		job = await self.add_two_stream_lecture()

		await self.retriever().retrieve(job)

		self.assertTrue(job.target.is_dir())
		self.assertEqual((job.target / "Stream1.mp4").read_bytes(), b"presenter")
		self.assertEqual((job.target / "Stream2.mp4").read_bytes(), b"slides")

	async def test_combined_lecture(self):
		job = await self.add_two_stream_lecture()

		await self.retriever(combine_videos=True).retrieve(job)

		self.assertEqual(job.target.read_bytes(), b"presenterslides")
		self.assertEqual([p.name for p in self.muxer.inputs], ["Stream1.mp4", "Stream2.mp4"])

	async def test_check_lecture(self):
		self.portal.add_page("ilias.php?ref_id=8&cmd=streamVideo&id=e1", player_page("https://ilias.example.edu/v/a.mp4"))
		self.portal.add_file("v/a.mp4", b"re-recorded video")
		job = self.job(
			"ilias.php?ref_id=8&cmd=streamVideo&id=e1",
			"Lecture_1.mp4",
			Kind.RECORDED_LECTURE,
			Decision.REFRESH,
			check_only=True,
		)
		job.target.write_bytes(b"video")

		await self.retriever().retrieve(job)

		# never overwritten, only reported
		self.assertEqual(job.target.read_bytes(), b"video")
		self.assertEqual(len(self.events.of_type(SyncWarning)), 1)

	async def test_external_link(self):
		self.portal.add_redirect("goto.php?target=webr_700", "https://www.example.org/paper.html")
		job = self.job("goto.php?target=webr_700", "Paper", Kind.LINK)

		await self.retriever().retrieve(job)

		self.assertEqual(job.target.read_text(), "https://www.example.org/paper.html\n")

	async def test_link_list(self):
		self.portal.add_page(
			"goto.php?target=webr_701",
			'<html><body><a href="ilias.php?ref_id=701&amp;cmd=callLink&amp;link_id=1">Skript</a>'
			'<a href="ilias.php?ref_id=701&amp;cmd=callLink&amp;link_id=2">Übungen</a></body></html>',
		)
		self.portal.add_redirect("ilias.php?ref_id=701&cmd=callLink&link_id=1", "https://www.example.org/skript")
		self.portal.add_redirect("ilias.php?ref_id=701&cmd=callLink&link_id=2", "https://www.example.org/uebungen")
		job = self.job("goto.php?target=webr_701", "Links", Kind.LINK)

		await self.retriever().retrieve(job)

		self.assertEqual((job.target / "Skript").read_text(), "https://www.example.org/skript\n")
		self.assertEqual((job.target / "Übungen").read_text(), "https://www.example.org/uebungen\n")
