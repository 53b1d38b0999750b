import typing

Principal = typing.NewType("Principal", str)

CourseId = typing.NewType("CourseId", int)
MilestoneId = typing.NewType("MilestoneId", int)
ProgressId = typing.NewType("ProgressId", int)
BlockHeight = typing.NewType("BlockHeight", int)
LedgerId = typing.NewType("LedgerId", str)
