"""
Tests for data loading, the view cache and the frame-driven session.

Run with: python -m implicit_scene.test_session  (or pytest)
"""

import json
import math
import sys
import tempfile
from pathlib import Path

import torch
from PIL import Image


COLORS = [(255, 0, 0, 255), (0, 255, 0, 255), (0, 0, 255, 255), (255, 255, 0, 128)]


def make_scene(root: Path, num_frames: int = 3, with_file_path: bool = True, size: int = 16) -> Path:
    """Write a tiny Blender-style scene of flat-colored images."""
    from .utils import look_at_pose

    (root / "train").mkdir(parents=True, exist_ok=True)
    frames = []
    for i in range(num_frames):
        angle = 2.0 * math.pi * i / num_frames
        pose = look_at_pose((4.0 * math.cos(angle), 4.0 * math.sin(angle), 1.5))
        Image.new("RGBA", (size, size), COLORS[i % len(COLORS)]).save(root / "train" / f"r_{i}.png")
        frame = {"transform_matrix": pose.tolist()}
        if with_file_path:
            frame["file_path"] = f"./train/r_{i}"
        frames.append(frame)

    path = root / "transforms_train.json"
    with open(path, "w") as f:
        json.dump({"camera_angle_x": 0.6911, "frames": frames}, f)
    return path


def make_session(root: Path, num_frames: int = 3, burst_steps: int = 5, long_burst_steps: int = 12,
                 load_batch: int = 10):
    from .config import SceneConfig, RayConfig, DataConfig, TrainConfig

    config = SceneConfig(
        rays=RayConfig(resolution=8),
        data=DataConfig(transforms_path=str(make_scene(root, num_frames)), load_batch=load_batch),
        train=TrainConfig(burst_steps=burst_steps, long_burst_steps=long_burst_steps, seed=0),
    )
    from .session import SceneSession
    return SceneSession(config)


def test_load_transforms():
    from .data import load_transforms

    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        path = make_scene(root, num_frames=4, with_file_path=False)
        transforms = load_transforms(path)
        assert len(transforms) == 4
        assert transforms.poses.shape == (4, 4, 4)
        assert abs(transforms.half_fov_x - 0.6911) < 1e-9
        assert transforms.image_paths[2] == root / "train" / "r_2.png"

        capped = load_transforms(path, max_images=2)
        assert len(capped) == 2

        try:
            load_transforms(root / "missing.json")
        except FileNotFoundError:
            pass
        else:
            raise AssertionError("Missing file not reported")

        bad = root / "transforms_bad.json"
        bad.write_text(json.dumps({"frames": []}))
        try:
            load_transforms(bad)
        except ValueError:
            pass
        else:
            raise AssertionError("Missing camera_angle_x not reported")
    print("  ✓ Transform metadata")


def test_image_queue_signals():
    from .data import ImageLoadQueue, SceneDataset, load_transforms

    with tempfile.TemporaryDirectory() as tmp:
        transforms = load_transforms(make_scene(Path(tmp), num_frames=3))
        dataset = SceneDataset(transforms, 8)
        drained = []
        queue = ImageLoadQueue(transforms, 8, on_loaded=dataset.add,
                               on_drained=lambda: drained.append(len(dataset)))

        assert queue.process_next() is None
        assert queue.request(2) == 2
        assert queue.is_busy
        assert queue.request(1) == 0  # busy, ignored

        first = queue.process_next()
        assert first.index == 0 and len(dataset) == 1 and drained == []
        second = queue.process_next()
        assert second.index == 1 and drained == [2]
        assert not dataset.is_complete

        assert not queue.can_request(10)
        assert queue.can_request()
        assert queue.request(10) == 1
        queue.drain()
        assert dataset.is_complete
        assert drained == [2, 3]
        assert queue.request() == 0

        # Red image, full alpha
        assert torch.allclose(dataset[0].target[0, 0], torch.tensor([1.0, -1.0, -1.0, 1.0]), atol=2 / 255)
    print("  ✓ Image queue")


def test_missing_image_keeps_queue_state():
    from .data import ImageLoadQueue, load_transforms

    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        transforms = load_transforms(make_scene(root, num_frames=2))
        (root / "train" / "r_0.png").unlink()
        queue = ImageLoadQueue(transforms, 8)
        queue.request()
        try:
            queue.process_next()
        except FileNotFoundError:
            pass
        else:
            raise AssertionError("Missing image not reported")
        assert list(queue.pending) == [0, 1]
        assert queue.num_loaded == 0
    print("  ✓ Failed load leaves queue untouched")


def test_view_cache_reuses_ray_field():
    from .model import ImplicitSceneModel
    from .utils import look_at_pose
    from .view import ViewCache, RefreshReason

    model = ImplicitSceneModel()
    view = ViewCache(lambda: model, 0.6911, 8)
    pose = look_at_pose((0.0, -4.0, 3.0))

    view.refresh(pose, RefreshReason.CAMERA_MOVED)
    assert view.field_builds == 1 and view.refresh_count == 1
    assert view.preview.shape == (8, 8, 4)
    assert view.preview.min() >= 0.0 and view.preview.max() <= 1.0

    view.refresh(pose, RefreshReason.TRAINED)
    assert view.field_builds == 1 and view.refresh_count == 2

    view.refresh(look_at_pose((4.0, 0.0, 3.0)), RefreshReason.TRAINED)
    assert view.field_builds == 2

    view.update_view(pose, same_input=True)
    assert view.field_builds == 2 and view.refresh_count == 4
    view.update_view(pose, same_input=False)
    assert view.field_builds == 3

    assert not view.refresh_if_dirty(pose)
    view.mark_dirty(RefreshReason.TRAINED)
    assert view.refresh_if_dirty(pose)
    assert view.field_builds == 3 and not view.is_dirty

    expected = torch.clamp((model.predict(view.get_input(pose)) + 1) / 2, 0, 1)
    assert torch.allclose(view.preview, expected)

    img = view.to_pil()
    assert img.size == (8, 8) and img.mode == "RGBA"
    print("  ✓ View cache")


def test_session_gates_training_on_complete_dataset():
    with tempfile.TemporaryDirectory() as tmp:
        session = make_session(Path(tmp), num_frames=3)
        assert session.view.refresh_count == 1  # initial preview

        assert session.tick() is None
        session.load_images(2)
        assert session.tick() is None
        assert session.tick() is None
        assert len(session.dataset) == 2 and not session.is_ready

        session.load_images()
        result = session.tick()  # loads the last image, then trains
        assert session.is_ready
        assert result is not None and result.applied
        assert session.training_progress == (1, 5)
    print("  ✓ Training gated on complete dataset")


def test_load_more_uses_batch_size():
    with tempfile.TemporaryDirectory() as tmp:
        session = make_session(Path(tmp), num_frames=7, load_batch=3)
        assert session.can_load_more
        assert session.load_more() == 3
        assert list(session.loader.pending) == [0, 1, 2]
        assert session.load_more() == 0  # busy

        session.loader.drain()
        assert session.load_more() == 3
        session.loader.drain()
        assert len(session.dataset) == 6

        # One frame left: less than a batch
        assert not session.can_load_more
        assert session.load_more() == 0
        assert session.load_images() == 1
    print("  ✓ Load more in batches")


def test_session_training_bursts():
    with tempfile.TemporaryDirectory() as tmp:
        session = make_session(Path(tmp), num_frames=2, burst_steps=5, long_burst_steps=12)
        session.load_images()
        session.loader.drain()

        steps = sum(session.tick() is not None for _ in range(20))
        assert steps == 5
        assert not session.is_training

        session.start_training(long=True)
        steps = sum(session.tick() is not None for _ in range(30))
        assert steps == 12
        assert session.training_progress == (12, 5)

        session.start_training()
        steps = sum(session.tick() is not None for _ in range(30))
        assert steps == 5
        assert session.trainer.step == 22
    print("  ✓ Training bursts")


def test_session_refreshes_only_when_dirty():
    from .utils import look_at_pose

    with tempfile.TemporaryDirectory() as tmp:
        session = make_session(Path(tmp), num_frames=2, burst_steps=3)
        session.load_images()
        session.loader.drain()

        builds = session.view.field_builds
        for _ in range(3):
            session.tick()
        # Trained three times with a still camera: three refreshes, no new rays
        assert session.view.refresh_count == 4
        assert session.view.field_builds == builds

        session.tick()
        session.tick()
        assert session.view.refresh_count == 4

        session.set_camera_pose(look_at_pose((1.0, -4.0, 2.0)))
        session.tick()
        assert session.view.refresh_count == 5
        assert session.view.field_builds == builds + 1
        assert torch.equal(session.get_input(), session.view.field)
    print("  ✓ Refresh only when dirty")


def test_session_reset_and_core_ops():
    with tempfile.TemporaryDirectory() as tmp:
        session = make_session(Path(tmp), num_frames=2)
        session.load_images()
        session.loader.drain()

        preview = session.preview.clone()
        field = session.get_input()
        assert field.shape == (8, 8, 6)
        jittered = session.get_input(session.dataset[0].pose, jitter=True)
        assert jittered.shape == (8, 8, 6)

        pred = session.predict(field)
        assert pred.shape == (8, 8, 4)

        assert session.train_step() is not None
        session.update_view(same_input=True)

        builds = session.view.field_builds
        session.reset_model()
        assert session.trainer.step == 0
        assert session.view.field_builds == builds + 1
        assert session.view.field is not None
        assert not torch.allclose(session.preview, preview)
        assert session.preview_image().size == (8, 8)
    print("  ✓ Reset and core operations")


def test_nearest_views_and_jump():
    with tempfile.TemporaryDirectory() as tmp:
        session = make_session(Path(tmp), num_frames=4)
        session.load_images()
        session.loader.drain()

        # Camera 1 sits at angle pi/2, i.e. on the +y side
        ranking = session.dataset.nearest_views((0.0, 6.0, 2.0))
        assert ranking[0] == 1
        assert ranking[-1] == 3
        assert sorted(ranking) == [0, 1, 2, 3]

        assert session.jump_to_view() == 0
        assert torch.equal(session.camera_pose, session.dataset[0].pose)
        assert session.nearest_views()[0] == 0
        assert [session.jump_to_view() for _ in range(4)] == [1, 2, 3, 0]
    print("  ✓ Nearest views and jump")


def test_checkpoint_round_trip():
    from .inference import load_checkpoint, render_preview, render_orbit

    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        session = make_session(root, num_frames=2)
        session.load_images()
        session.loader.drain()
        for _ in range(3):
            session.train_step()

        path = root / "checkpoint.pt"
        session.trainer.save_checkpoint(path, session.config)
        model, checkpoint = load_checkpoint(path)
        assert checkpoint["step"] == 3
        assert checkpoint["resolution"] == 8

        field = session.get_input()
        assert torch.allclose(model.predict(field), session.predict(field))

        still = render_preview(model, session.camera_pose, checkpoint["half_fov_x"], 8)
        expected = torch.clamp((session.predict(field) + 1) / 2, 0, 1)
        assert torch.allclose(still, expected, atol=1e-6)
        frames = render_orbit(model, checkpoint["half_fov_x"], 8, num_frames=3)
        assert len(frames) == 3 and frames[0].shape == (8, 8, 4)
    print("  ✓ Checkpoint round trip")


def test_experiment_logger():
    from .logger import ExperimentLogger, TrainingMetrics

    with tempfile.TemporaryDirectory() as tmp:
        logger = ExperimentLogger(Path(tmp), use_tensorboard=False)
        logger.log_training(TrainingMetrics(iteration=1, loss=0.5, psnr=12.0))
        logger.log_training(TrainingMetrics(iteration=2, loss=float("nan"), applied=False))
        path = logger.log_preview("view", torch.rand(8, 8, 4), 2)
        logger.save_summary()
        logger.close()

        assert path.exists()
        lines = (Path(tmp) / "logs" / "train_metrics.csv").read_text().strip().splitlines()
        assert len(lines) == 3
        summary = json.loads((Path(tmp) / "summary.json").read_text())
        assert summary["skipped_updates"] == 1
        assert summary["final_loss"] == 0.5
    print("  ✓ Experiment logger")


def test_orbit_pose_is_valid():
    from .rays import validate_pose
    from .utils import orbit_pose, camera_position

    for t in (0.0, 1.0, 2.5, 6.0):
        pose = validate_pose(orbit_pose(t, radius=4.0))
        assert abs(torch.norm(camera_position(pose)).item() - 4.0) < 1e-5
        assert pose[2, 3] > 0
    print("  ✓ Orbit poses")


def main():
    """Run all tests."""
    print("=" * 60)
    print("Implicit Scene Session Tests")
    print("=" * 60 + "\n")

    try:
        test_load_transforms()
        test_image_queue_signals()
        test_missing_image_keeps_queue_state()
        test_view_cache_reuses_ray_field()
        test_session_gates_training_on_complete_dataset()
        test_load_more_uses_batch_size()
        test_session_training_bursts()
        test_session_refreshes_only_when_dirty()
        test_session_reset_and_core_ops()
        test_nearest_views_and_jump()
        test_checkpoint_round_trip()
        test_experiment_logger()
        test_orbit_pose_is_valid()

        print("\n" + "=" * 60)
        print("All tests passed! ✓")
        print("=" * 60)

    except Exception as e:
        print(f"\n✗ Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
