import pathlib as pl
import typing as tp

FileType = str | pl.Path
ArgvType = tp.Sequence[str]
# JVM arguments can be passed either as a single argument or as a list of arguments
JvmArgsType = str | tp.Sequence[str] | None
