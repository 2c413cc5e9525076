"""
PlaceholderManager: provisional nodes, result patches and batch reconciliation.
"""
from core.ontology import EdgeState, NodeKind, TargetSlot, UploadState, VideoStatus
from core.schemas import ImageNode, Position, TextNode, VideoNode
from orchestration.adapter import GenerationResult


def result(n: int = 0, **fields) -> GenerationResult:
    return GenerationResult(content_url=f"https://cdn.example/{n}.png", media_id=f"m-{n}", **fields)


class TestCreateAndDiscard:

    def test_image_placeholder_is_pending(self, store, placeholders):
        node_id = placeholders.create_placeholder(NodeKind.IMAGE, Position(5, 5))
        node = store.get_node(node_id)
        assert isinstance(node, ImageNode)
        assert node.pending_generation is True
        assert node.position == Position(5, 5)

    def test_video_placeholder_is_queued(self, store, placeholders):
        node_id = placeholders.create_placeholder(NodeKind.VIDEO, Position(), {"prompt_text": "x"})
        node = store.get_node(node_id)
        assert node.status == VideoStatus.QUEUED
        assert node.prompt_text == "x"

    def test_discard_removes_edges(self, store, placeholders):
        text = store.add_node(TextNode.create(text="cat"))
        node_id = placeholders.create_placeholder(NodeKind.IMAGE, Position())
        placeholders.connect(text.id, node_id, TargetSlot.PROMPT_TEXT, animated=True)
        assert placeholders.discard(node_id) is True
        assert store.edge_count == 0
        assert placeholders.discard(node_id) is False


class TestPatchOnSuccess:

    def test_image_gets_content(self, store, placeholders):
        node_id = placeholders.create_placeholder(NodeKind.IMAGE, Position())
        assert placeholders.patch_on_success(node_id, result(1)) is True
        node = store.get_node(node_id)
        assert node.src == "https://cdn.example/1.png"
        assert node.media_id == "m-1"
        assert node.pending_generation is False
        assert node.upload_state == UploadState.SYNCED

    def test_generating_video_becomes_ready(self, store, placeholders):
        video = store.add_node(VideoNode.create(status=VideoStatus.GENERATING, progress=40))
        placeholders.patch_on_success(video.id, result(2, thumbnail="t.jpg", duration=8.0))
        node = store.get_node(video.id)
        assert node.status == VideoStatus.READY
        assert node.progress == 100
        assert (node.thumbnail, node.duration) == ("t.jpg", 8.0)

    def test_stale_video_result_is_dropped(self, store, placeholders):
        video = store.add_node(VideoNode.create(status=VideoStatus.PENDING))
        assert placeholders.patch_on_success(video.id, result()) is False
        assert store.get_node(video.id).src == ""

    def test_deleted_node_is_not_recreated(self, store, placeholders):
        assert placeholders.patch_on_success("image-gone", result()) is False
        assert store.node_count == 0


class TestPatchOnError:

    def test_video_error_turns_edges_red(self, store, placeholders):
        image = store.add_node(ImageNode.create(media_id="m"))
        video = store.add_node(VideoNode.create(status=VideoStatus.GENERATING, progress=50))
        placeholders.connect(image.id, video.id, TargetSlot.START_IMAGE, animated=True)

        assert placeholders.patch_on_error(video.id, "backend down") is True
        node = store.get_node(video.id)
        assert node.status == VideoStatus.ERROR
        assert node.error_message == "backend down"
        assert node.progress is None
        edge = store.edges()[0]
        assert edge.state == EdgeState.ERROR
        assert edge.animated is False

    def test_error_never_overwrites_error(self, store, placeholders):
        video = store.add_node(VideoNode.create(status=VideoStatus.ERROR, error_message="first"))
        assert placeholders.patch_on_error(video.id, "second") is False
        assert store.get_node(video.id).error_message == "first"

    def test_pending_video_is_left_alone(self, store, placeholders):
        video = store.add_node(VideoNode.create())
        assert placeholders.patch_on_error(video.id, "late") is False
        assert store.get_node(video.id).status == VideoStatus.PENDING

    def test_image_error(self, store, placeholders):
        node_id = placeholders.create_placeholder(NodeKind.IMAGE, Position())
        placeholders.patch_on_error(node_id, "nsfw filter")
        node = store.get_node(node_id)
        assert node.error_message == "nsfw filter"
        assert node.pending_generation is False


class TestReconcileBatch:

    def test_short_batch_discards_surplus(self, store, placeholders):
        ids = [placeholders.create_placeholder(NodeKind.IMAGE, Position(i * 10, 0)) for i in range(4)]
        kept = placeholders.reconcile_batch(ids, [result(0), result(1)])
        assert kept == ids[:2]
        assert [store.has_node(i) for i in ids] == [True, True, False, False]

    def test_extra_results_are_ignored(self, store, placeholders):
        ids = [placeholders.create_placeholder(NodeKind.IMAGE, Position())]
        assert placeholders.reconcile_batch(ids, [result(0), result(1), result(2)]) == ids
        assert store.node_count == 1

    def test_deleted_placeholder_is_not_kept(self, store, placeholders):
        ids = [placeholders.create_placeholder(NodeKind.IMAGE, Position()) for _ in range(2)]
        store.delete_node(ids[0])
        assert placeholders.reconcile_batch(ids, [result(0), result(1)]) == [ids[1]]
