"""nameof accessor generator for C# programs."""

from .csharp import render as render
from .csharp import render_core as render_core
from .markers import MarkerError as MarkerError
from .markers import parse_marker as parse_marker
from .pipeline import GenerationPass as GenerationPass
from .pipeline import GeneratorOptions as GeneratorOptions
from .pipeline import PassResult as PassResult
from .pipeline import collect_targets as collect_targets
from .resolver import SymbolResolver as SymbolResolver
from .source import SourceError as SourceError
from .source import SourceProgram as SourceProgram
from .types import *
