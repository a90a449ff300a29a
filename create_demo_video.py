"""
Create demo videos for testing the color tracker.
Includes a moving target blob, smaller same-colored distractors, other-colored
distractors, lighting changes and temporary disappearance.
"""

import math
import random

import cv2
import numpy as np


def open_writer(filename, fps, size):
    """VideoWriter with XVID, falling back to mp4v"""
    fourcc = cv2.VideoWriter_fourcc(*'XVID')
    out = cv2.VideoWriter(filename, fourcc, fps, size)
    if not out.isOpened():
        print("Warning: Could not open video writer with XVID, trying mp4v...")
        fourcc = cv2.VideoWriter_fourcc(*'mp4v')
        out = cv2.VideoWriter(filename, fourcc, fps, size)
    if not out.isOpened():
        print("Error: Could not initialize video writer")
        return None
    return out


def create_demo_video(filename="demo.mp4", duration=20, fps=30, target_color=(0, 0, 255), seed=7):
    """
    Create a demo video with a target blob following scripted scenarios.

    Scenarios (12-second cycle):
    - Circular motion on a dark background
    - Linear sweep with a small same-colored distractor (dominant blob test)
    - Lighting change (whole frame brightness drifts)

    Args:
        filename: Output video filename
        duration: Video duration in seconds
        fps: Frames per second
        target_color: BGR color of the target blob
        seed: Random seed for distractor placement
    """
    rng = random.Random(seed)
    width, height = 960, 720
    total_frames = duration * fps

    out = open_writer(filename, fps, (width, height))
    if out is None:
        return False

    print(f"Creating demo video: {filename}")
    print(f"Duration: {duration}s, FPS: {fps}, Total frames: {total_frames}")
    print(f"Resolution: {width}x{height}, target color (BGR): {target_color}")

    # Other-colored distractors stay put for the whole video
    distractor_colors = [(255, 0, 0), (0, 255, 0), (255, 255, 0), (0, 255, 255)]
    distractors = [(rng.randint(40, width - 40), rng.randint(40, height - 40),
                    rng.randint(20, 45), rng.choice(distractor_colors)) for _ in range(5)]

    for frame_num in range(total_frames):
        t = frame_num / fps
        frame = np.full((height, width, 3), 35, dtype=np.uint8)

        for dx, dy, size, color in distractors:
            cv2.rectangle(frame, (dx - size, dy - size), (dx + size, dy + size), color, -1)

        scenario_time = t % 12
        half = 60
        if scenario_time < 4:
            angle = 2 * math.pi * scenario_time / 4
            target_x = int(width / 2 + 200 * math.cos(angle))
            target_y = int(height / 2 + 150 * math.sin(angle))
        elif scenario_time < 8:
            progress = (scenario_time - 4) / 4
            target_x = int(120 + (width - 240) * progress)
            target_y = int(height * 0.6)
            # Small same-colored distractor, must not win
            cv2.circle(frame, (int(width * 0.8), int(height * 0.2)), 18, target_color, -1)
        else:
            target_x = width // 2
            target_y = height // 2
            half = int(60 + 20 * math.sin(2 * math.pi * scenario_time))

        visible = not (10.5 < scenario_time < 11.0)
        if visible:
            cv2.rectangle(frame, (target_x - half, target_y - half), (target_x + half, target_y + half),
                          target_color, -1)

        if scenario_time >= 8:
            gain = 0.75 + 0.25 * math.cos(2 * math.pi * (scenario_time - 8) / 4)
            frame = cv2.convertScaleAbs(frame, alpha=gain, beta=0)

        cv2.putText(frame, f"Time: {t:.1f}s", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 2)
        out.write(frame)

        if frame_num % max(1, total_frames // 10) == 0:
            print(f"Progress: {frame_num / total_frames * 100:.1f}%")

    out.release()
    print(f"Demo video created successfully: {filename}")
    print(f"Test with: python tracker_app.py --source {filename} --debug")
    return True


def main():
    """Create demo videos"""
    import argparse

    parser = argparse.ArgumentParser(description='Create demo videos for color tracking')
    parser.add_argument('--output', type=str, default='demo.mp4', help='Output filename')
    parser.add_argument('--duration', type=int, default=20, help='Video duration in seconds')
    parser.add_argument('--fps', type=int, default=30, help='Frames per second')
    parser.add_argument('--blue', action='store_true', help='Use a blue target instead of red')

    args = parser.parse_args()
    target_color = (255, 0, 0) if args.blue else (0, 0, 255)
    create_demo_video(args.output, args.duration, args.fps, target_color)

    print("\nRecommended test commands:")
    print(f"  Basic test:   python tracker_app.py --source {args.output} --debug")
    print(f"  Performance:  python performance_test.py --source {args.output}")


if __name__ == "__main__":
    main()
