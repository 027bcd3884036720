#!/usr/bin/python3
# Generates a CNC drilling program (G-code) for a solder paste stencil from a
# KiCad paste layer Gerber (F.Paste / B.Paste).
#
# Every pad becomes one drilled hole. Pad sizes are snapped to the closest
# bit of the drill catalog below, and the holes of each bit are ordered with a
# nearest neighbour search so the machine does not zig-zag across the board.
#
# One G-Code file is exported (plus an optional PNG preview):
#
# 1) xx.Stencil.ngc (one tool change per drill bit, smallest bit first)
# 2) xx.Stencil.png (Drill plan preview - only with EXPORT_VISUALIZATION)
#
# Bottom side Gerbers ('-B.' in the file name) are mirrored in X.
#
# Requires 'shapely', 'numpy' and 'pillow'.

import sys, re, os
import math
from shapely.geometry import MultiPoint
from PIL import Image, ImageDraw
import numpy as np
from typing import List, NamedTuple, Optional, Tuple

# --- CONFIGURATION PARAMETERS ---

# Available drill bits (mm), smallest first
DRILL_SIZES = [0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0, 1.1, 1.2]

# Path Optimization
MAX_PATH_ITERATIONS = 1000
PATH_RANDOM_SEED = None  # Set to an int for reproducible tool paths

# Pad Size Estimation
MAX_SIZE_FACTOR = 1.2  # Hole may exceed the smaller pad dimension by 20%

# Gerber Defaults (until the format comment says otherwise)
DEFAULT_UNITS = 'imperial'
DEFAULT_DECIMAL_PLACES = 6
MM_PER_INCH = 25.4

# CNC Parameters
SPINDLE_SPEED = 10000
FEED_RATE = 100.0
PATH_TOLERANCE = 0.01
SAFE_HEIGHT = 2.0
DRILL_START_HEIGHT = 0.5
DRILL_DEPTH_OFFSET = 0.5  # Plunge depth = bit radius + offset
MACHINE_SAFE_Z = -2.0  # G53 machine coordinates
PARK_X = -189.0  # G53 machine coordinates

# Files
OUTPUT_EXTENSION = '.Stencil.ngc'
BOTTOM_LAYER_MARKER = '-B.'

# Visualization
EXPORT_VISUALIZATION = False
VISUALIZATION_EXTENSION = '.Stencil.png'
VISUALIZATION_SCALE = 20  # pixels per mm
VISUALIZATION_MARGIN = 5.0  # mm


# --------------------------------

class GerberFormatError(ValueError):
    """Input line the stencil generator cannot make sense of."""

    def __init__(self, reason: str, line: str = '', line_number: int = 0):
        self.reason = reason
        self.line = line
        self.line_number = line_number
        if line_number:
            message = f"line {line_number}: {reason}: '{line}'"
        elif line:
            message = f"{reason}: '{line}'"
        else:
            message = reason
        super().__init__(message)


class UnknownApertureError(GerberFormatError):
    def __init__(self, name: str, line: str = '', line_number: int = 0):
        self.name = name
        super().__init__(f"aperture '{name}' is not defined", line, line_number)


class Position(NamedTuple):
    x: float
    y: float


def position_tag(pos: Position) -> str:
    # Pads closer than 0.01 mm are the same pad
    return f"X {pos.x: 7.2f}      Y {pos.y: 7.2f}"


def bounding_box(points: List[Position]) -> Tuple[float, float, float, float]:
    """Returns (min_x, min_y, max_x, max_y) of the points."""
    if not points:
        raise ValueError("No points found for bounding box.")
    return MultiPoint([(p.x, p.y) for p in points]).bounds


def bounding_box_center(points: List[Position]) -> Position:
    min_x, min_y, max_x, max_y = bounding_box(points)
    return Position((min_x + max_x) / 2.0, (min_y + max_y) / 2.0)


def estimate_pad_size(width: float, height: float) -> float:
    """
    Hole diameter for a rectangular pad.

    The area equivalent size fits square pads best, but on long thin pads it
    would be wider than the pad itself, so it is capped relative to the
    smaller dimension.
    """
    area_size = math.sqrt(width * height)
    max_size = min(width, height) * MAX_SIZE_FACTOR
    return min(max_size, area_size)


def bounding_box_size(points: List[Position]) -> float:
    min_x, min_y, max_x, max_y = bounding_box(points)
    return estimate_pad_size(max_x - min_x, max_y - min_y)


# =========================================================================================
class Aperture:
    def __init__(self, name: Optional[str], size: float):
        self.name = name
        self.size = size
        self.positions: List[Position] = []

    def __repr__(self):
        return f"Aperture({self.name!r}, {self.size:.3f}, {len(self.positions)} positions)"

    def __str__(self):
        lines = [f"name: {self.name or '(contour)'}",
                 f"size: {self.size:.2f}",
                 f"occurences: {len(self.positions)}"]
        lines += [position_tag(p) for p in self.positions]
        return "\n".join(lines)


class GerberPadsParser:
    def __init__(self, mirror_x: bool = False):
        self.apertures: List[Aperture] = []
        self.current_aperture: int = -1
        self.units: str = DEFAULT_UNITS
        self.decimal_divider: float = 10.0 ** DEFAULT_DECIMAL_PLACES
        self.mirror_x = mirror_x

        self.contour_mode: bool = False
        self.contour_points: List[Position] = []
        self.seen_positions: set = set()

        self.line_number: int = 0
        self.ignored_flashes: int = 0

    @property
    def unit_mult(self) -> float:
        return MM_PER_INCH if self.units == 'imperial' else 1.0

    def _error(self, reason: str, line: str) -> GerberFormatError:
        return GerberFormatError(reason, line, self.line_number)

    def _parse_number(self, text: str, line: str) -> float:
        try:
            value = float(text)
        except ValueError:
            raise self._error(f"invalid number '{text}'", line) from None
        if not math.isfinite(value):
            raise self._error(f"invalid number '{text}'", line)
        return value

    def _process_format(self, line: str):
        # G04 Gerber Fmt 4.6, Leading zero omitted, Abs format (unit mm)*
        format_match = re.match(r'G04 Gerber Fmt (\d+)\.(\d+)\b', line)
        if not format_match:
            raise self._error("incorrect number format", line)

        self.decimal_divider = 10.0 ** int(format_match.group(2))

        if '(unit mm)' in line:
            self.units = 'metric'
        elif '(unit in' in line:
            self.units = 'imperial'

    def _process_aperture_definition(self, line: str):
        aperture_match = re.match(r'%AD(D\d+)([A-Za-z_][\w.$]*),([^*]*)\*%?', line)
        if not aperture_match:
            raise self._error("malformed aperture definition", line)

        name = aperture_match.group(1)
        aperture_type = aperture_match.group(2)
        params = [self._parse_number(p, line) for p in aperture_match.group(3).split('X') if p]
        if not params:
            raise self._error("aperture without dimensions", line)

        if aperture_type == 'C':  # Circle, optional hole ignored
            size = params[0]
        elif aperture_type in ('R', 'O'):  # Rectangle, Obround
            width = params[0]
            height = params[1] if len(params) > 1 else width
            size = estimate_pad_size(width, height)
        elif aperture_type == 'RoundRect':
            # KiCad macro: corner radius, four corner centers, rotation
            if len(params) < 9:
                raise self._error("RoundRect needs a radius and four corners", line)
            radius = params[0]
            xs = params[1:9:2]
            ys = params[2:9:2]
            width = max(xs) - min(xs) + 2 * radius
            height = max(ys) - min(ys) + 2 * radius
            size = estimate_pad_size(width, height)
        else:
            raise self._error(f"unknown aperture shape '{aperture_type}'", line)

        size *= self.unit_mult
        if size <= 0:
            raise self._error("aperture size must be positive", line)

        self.apertures.append(Aperture(name, size))

    def _select_aperture(self, name: str, line: str):
        for index, aperture in enumerate(self.apertures):
            if aperture.name == name:
                self.current_aperture = index
                return
        raise UnknownApertureError(name, line, self.line_number)

    def _parse_position(self, line: str) -> Position:
        coord_match = re.match(r'X([-+]?\d+)Y([-+]?\d+)', line)
        if not coord_match:
            raise self._error("malformed coordinates", line)

        x = int(coord_match.group(1)) / self.decimal_divider * self.unit_mult
        y = int(coord_match.group(2)) / self.decimal_divider * self.unit_mult
        if self.mirror_x:
            x = -x
        return Position(x, y)

    def _add_position(self, aperture: Aperture, pos: Position) -> bool:
        tag = position_tag(pos)
        if tag in self.seen_positions:
            self.ignored_flashes += 1
            return False
        self.seen_positions.add(tag)
        aperture.positions.append(pos)
        return True

    def _finish_contour(self, line: str):
        self.contour_mode = False
        if not self.contour_points:
            raise self._error("contour without points", line)

        pos = bounding_box_center(self.contour_points)
        size = bounding_box_size(self.contour_points)
        if size <= 0:
            raise self._error("contour has no area", line)

        aperture = Aperture(None, size)
        if self._add_position(aperture, pos):
            self.apertures.append(aperture)

    def _process_contour_line(self, line: str):
        if line.startswith('X'):
            self.contour_points.append(self._parse_position(line))
        elif line.startswith('G37*'):
            self._finish_contour(line)

    def process_line(self, line: str):
        self.line_number += 1
        line = line.strip()

        if self.contour_mode:
            self._process_contour_line(line)
            return

        if line.startswith('G04 Gerber Fmt '):
            self._process_format(line)
        elif line.startswith('%MOMM*%'):
            self.units = 'metric'
        elif line.startswith('%MOIN*%'):
            self.units = 'imperial'
        elif line.startswith('%AD'):
            self._process_aperture_definition(line)
        elif line.startswith('D'):
            aperture_match = re.match(r'D(\d+)\*?$', line)
            # D01-D03 are operation codes, D10+ are user-defined apertures
            if aperture_match and int(aperture_match.group(1)) >= 10:
                self._select_aperture('D' + aperture_match.group(1), line)
        elif line.startswith('X'):
            pos = self._parse_position(line)
            if self.current_aperture < 0:
                raise self._error("coordinates before any aperture selection", line)
            self._add_position(self.apertures[self.current_aperture], pos)
        elif line.startswith('G36*'):
            self.contour_points = []
            self.contour_mode = True

    def parse_lines(self, lines) -> List[Aperture]:
        for line in lines:
            self.process_line(line)
        return self.apertures_by_size()

    def parse_file(self, filename: str) -> List[Aperture]:
        print(f"PARSING: Reading file: {filename}")
        try:
            with open(filename, 'r', encoding='utf-8') as f:
                apertures = self.parse_lines(f)
        except UnicodeDecodeError:
            raise GerberFormatError("input is not UTF-8 text", line_number=self.line_number + 1) from None

        pads = sum(len(a.positions) for a in apertures)
        print(f"PARSING: {len(apertures)} apertures, {pads} pads "
              f"({self.ignored_flashes} duplicate flashes ignored)")
        return apertures

    def apertures_by_size(self) -> List[Aperture]:
        # sorted() is stable, equal sizes keep file order
        return sorted(self.apertures, key=lambda a: a.size)


# =========================================================================================
class DrillBin:
    def __init__(self, size: float):
        self.size = size
        self.positions: List[Position] = []

    def __repr__(self):
        return f"DrillBin({self.size:.1f}, {len(self.positions)} holes)"


class DrillClassifier:
    def __init__(self, drill_sizes: List[float] = None):
        sizes = DRILL_SIZES if drill_sizes is None else drill_sizes
        self.bins: List[DrillBin] = [DrillBin(size) for size in sizes]
        self._sizes = np.array(sizes, dtype=float)

    def bin_for(self, size: float) -> DrillBin:
        # Rounding makes exact midpoints tie, argmin then keeps the smaller bit
        distances = np.round(np.abs(self._sizes - size), 9)
        return self.bins[int(np.argmin(distances))]

    def categorize(self, aperture: Aperture) -> DrillBin:
        drill = self.bin_for(aperture.size)
        drill.positions.extend(aperture.positions)
        return drill

    def classify(self, apertures: List[Aperture]) -> List[DrillBin]:
        for aperture in apertures:
            self.categorize(aperture)
        return self.bins

    def summary(self) -> str:
        lines = [f"  {drill.size:.1f} mm: {len(drill.positions)} holes"
                 for drill in self.bins if drill.positions]
        return "\n".join(lines) if lines else "  no holes"


# =========================================================================================
def path_cost(positions: List[Position]) -> float:
    """Sum of squared distances between consecutive positions."""
    if len(positions) < 2:
        return 0.0
    coords = np.array(positions, dtype=float)
    return float(np.sum((coords[1:] - coords[:-1]) ** 2))


def optimize_drill_path(positions: List[Position],
                        rng: Optional[np.random.Generator] = None) -> List[Position]:
    """
    Orders drill positions to keep the travel between holes short.

    Greedy nearest neighbour tours are built from up to MAX_PATH_ITERATIONS
    different start holes and the cheapest one wins. With more holes than
    iterations the start holes are picked at random from rng.
    """
    n = len(positions)
    if n <= 2:
        return list(positions)

    if rng is None:
        rng = np.random.default_rng(PATH_RANDOM_SEED)

    coords = np.array(positions, dtype=float)
    best_order = np.arange(n)
    best_cost = path_cost(positions)

    iterations = min(n, MAX_PATH_ITERATIONS)
    for iteration in range(iterations):
        start = int(rng.integers(n)) if n > MAX_PATH_ITERATIONS else iteration

        order = np.arange(n)
        order[0], order[start] = start, 0

        cost = 0.0
        for i in range(n - 1):
            remaining = order[i + 1:]
            distances = np.sum((coords[remaining] - coords[order[i]]) ** 2, axis=1)
            nearest = int(np.argmin(distances))
            order[i + 1], order[i + 1 + nearest] = order[i + 1 + nearest], order[i + 1]
            cost += distances[nearest]
            if cost >= best_cost:
                break

        if cost < best_cost:
            best_cost = cost
            best_order = order

    return [positions[k] for k in best_order]


# =========================================================================================
class GcodeGenerator:
    def _write_header(self, f):
        f.write("G94 ( Millimeters per minute feed rate. )\n")
        f.write("G21 ( Units == Millimeters. )\n")
        f.write("\n")
        f.write("G90 ( Absolute coordinates. )\n")
        f.write(f"S{SPINDLE_SPEED} ( RPM spindle speed. )\n")
        f.write(f"G64 P{PATH_TOLERANCE:.5f} ( set maximum deviation from commanded toolpath )\n")
        f.write("\n")
        f.write("G04 P0 ( dwell for no time -- G64 should not smooth over this point )\n")
        f.write(f"G53 G00 Z{MACHINE_SAFE_Z:.1f} ( retract )\n")

    def _write_tool_change(self, f, size: float):
        f.write("\n")
        f.write(f"(MSG, Change tool bit to drill size {size:f} mm)\n")
        f.write("M0      (Temporary machine stop.)\n")
        f.write("M3      (Spindle on clockwise.)\n")

    def _write_drill(self, f, pos: Position, size: float):
        depth = -(size / 2 + DRILL_DEPTH_OFFSET)
        f.write(f"G00 X{pos.x:f} Y{pos.y:f}\n")
        f.write(f"G00 Z{SAFE_HEIGHT:.5f}\n")
        f.write(f"G01 Z{depth:f} F{FEED_RATE:.5f}\n")
        f.write(f"G01 Z{DRILL_START_HEIGHT:.5f} F{FEED_RATE:.5f}\n")
        f.write(f"G00 Z{SAFE_HEIGHT:.5f} ( retract )\n")

    def _write_retract(self, f):
        f.write(f"G53 G00 Z{MACHINE_SAFE_Z:.1f}\n")
        f.write(f"G53 G00 X{PARK_X:.1f}\n")
        f.write("M5      (Spindle stop.)\n")

    def write_program(self, f, drill_bins: List[DrillBin]):
        """Writes the program for already ordered drill bins."""
        self._write_header(f)
        for drill in sorted(drill_bins, key=lambda d: d.size):
            if not drill.positions:
                continue
            self._write_tool_change(f, drill.size)
            for pos in drill.positions:
                self._write_drill(f, pos, drill.size)
            self._write_retract(f)

    def OutputStencilGcode(self, filename: str, drill_bins: List[DrillBin]):
        with open(filename, "w") as f:
            self.write_program(f, drill_bins)
        print(f"G-code generated in '{filename}'")


# =========================================================================================
class OutputVisualizer:
    def __init__(self, scale: int = VISUALIZATION_SCALE):
        self.scale = scale
        self.drill_bins: List[DrillBin] = []

    def load_drill_bins(self, drill_bins: List[DrillBin]):
        self.drill_bins = [d for d in drill_bins if d.positions]

    def render(self) -> Image.Image:
        all_positions = [p for d in self.drill_bins for p in d.positions]
        if not all_positions:
            raise ValueError("No holes found for visualization.")

        coords_array = np.array(all_positions, dtype=float)
        x_min_plot = np.min(coords_array[:, 0]) - VISUALIZATION_MARGIN
        x_max_plot = np.max(coords_array[:, 0]) + VISUALIZATION_MARGIN
        y_min_plot = np.min(coords_array[:, 1]) - VISUALIZATION_MARGIN
        y_max_plot = np.max(coords_array[:, 1]) + VISUALIZATION_MARGIN

        width_px = int((x_max_plot - x_min_plot) * self.scale)
        height_px = int((y_max_plot - y_min_plot) * self.scale)

        img = Image.new('RGB', (width_px, height_px), color='black')
        draw = ImageDraw.Draw(img)

        # Helper function to convert MM to inverted Y pixel coordinates
        def mm_to_px(x, y):
            screen_x = int((x - x_min_plot) * self.scale)
            screen_y = int(height_px - (y - y_min_plot) * self.scale)
            return (screen_x, screen_y)

        for index, drill in enumerate(self.drill_bins):
            # Cycle hue per drill bit
            hue = int(360 * index / len(self.drill_bins))
            color = f"hsl({hue}, 100%, 60%)"

            path_px = [mm_to_px(p.x, p.y) for p in drill.positions]
            if len(path_px) > 1:
                draw.line(path_px, fill=(90, 90, 90), width=1)

            radius_px = max(1, int(drill.size / 2 * self.scale))
            for x_px, y_px in path_px:
                draw.ellipse((x_px - radius_px, y_px - radius_px,
                              x_px + radius_px, y_px + radius_px),
                             fill=color, outline=(255, 255, 255))

        return img

    def save_png_visualization(self, filename: str):
        self.render().save(filename)
        print(f"Visualization saved to '{filename}'")


# =========================================================================================
def output_filename(input_filename: str, extension: str = OUTPUT_EXTENSION) -> str:
    directory, base_name = os.path.split(input_filename)
    return os.path.join(directory, base_name.split('.')[0] + extension)


def is_bottom_layer(input_filename: str) -> bool:
    return BOTTOM_LAYER_MARKER in input_filename


def generate_stencil(input_filename: str, rng: Optional[np.random.Generator] = None) -> str:
    """Runs the whole conversion and returns the name of the G-code file."""
    bottom = is_bottom_layer(input_filename)
    gcode_filename = output_filename(input_filename)

    if bottom:
        print("creating stencil for bottom side")
    else:
        print("creating stencil for top side")
    print(f"writing to '{gcode_filename}'")

    parser = GerberPadsParser(mirror_x=bottom)
    apertures = parser.parse_file(input_filename)

    classifier = DrillClassifier()
    drill_bins = classifier.classify(apertures)
    print("DRILLS:\n" + classifier.summary())

    if rng is None:
        rng = np.random.default_rng(PATH_RANDOM_SEED)

    for drill in drill_bins:
        if len(drill.positions) > 2:
            before = path_cost(drill.positions)
            drill.positions = optimize_drill_path(drill.positions, rng)
            after = path_cost(drill.positions)
            print(f"OPTIMIZATION: {drill.size:.1f} mm path cost {before:.1f} -> {after:.1f}")

    GcodeGenerator().OutputStencilGcode(gcode_filename, drill_bins)

    if EXPORT_VISUALIZATION and any(d.positions for d in drill_bins):
        visualizer = OutputVisualizer()
        visualizer.load_drill_bins(drill_bins)
        visualizer.save_png_visualization(output_filename(input_filename, VISUALIZATION_EXTENSION))

    return gcode_filename


# ----------------- MAIN EXECUTION FLOW -----------------

def main(argv: List[str] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: gerber2stencil <paste layer gerber>")
        return 1

    input_filename = args[0].replace("\\", "/")
    try:
        generate_stencil(input_filename)
    except GerberFormatError as e:
        print(f"ERROR: {input_filename}: {e}")
        return 1
    except OSError as e:
        print(f"ERROR: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
