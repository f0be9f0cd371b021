"""
Per-tool execution of one job attempt.

Every handler follows the same steps: validate inputs against the plan, run
the external transform(s) while reporting coarse progress, then persist the
artifact(s). Several artifacts are bundled into one zip which becomes the
primary result. Usage and cache population are returned to the worker, which
applies them only after it has recorded the job as completed.

Blocking work runs in threads. Handlers never hold partial side effects across
attempts: a retry redoes the whole tool into the same per-job directory.
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from videotext_pipeline.batch.aggregator import BatchAggregator
from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.errors import DurationExceeded, InvalidInput, PlanNotAllowed
from videotext_pipeline.jobs.limits import get_plan_limits
from videotext_pipeline.jobs.models import Job, ToolType
from videotext_pipeline.jobs.usage import UsageRecord, usage_for
from videotext_pipeline.runtime.watchdog import ProgressChannel
from videotext_pipeline.streaming.chunker import plan_chunks
from videotext_pipeline.streaming.partial import ContiguousPrefix, PartialPublisher, PartialSegment
from videotext_pipeline.tools import subtitles as subs
from videotext_pipeline.tools.base import MediaOps, Transcriber, Translator
from videotext_pipeline.tools.ffmpeg import COMPRESSION_CRF
from videotext_pipeline.utils.archive import write_zip
from videotext_pipeline.utils.log import logger
from videotext_pipeline.utils.naming import output_filename

# tools whose single-file output can be reused for identical content + options
CACHEABLE_TOOLS = frozenset({ToolType.VIDEO_TO_TRANSCRIPT, ToolType.VIDEO_TO_SUBTITLES})


@dataclass(slots=True)
class ExecutionOutcome:
    result: dict[str, Any]
    usage: UsageRecord | None = None
    # primary artifact worth caching (None when the tool is not cacheable)
    cache_path: Path | None = None


Handler = Callable[[Job, ProgressChannel], Awaitable[ExecutionOutcome]]


def _cues_to_segments(cues: list[subs.Cue]) -> list[PartialSegment]:
    return [PartialSegment(start=c.start, end=c.end, text=c.text, speaker=c.speaker) for c in cues]


def _subtitle_format(options: dict[str, Any], key: str = "format") -> str:
    fmt = str(options.get(key) or "srt").strip().lower()
    if fmt not in subs.SUBTITLE_FORMATS:
        raise InvalidInput(f"Unsupported subtitle format: {fmt}")
    return fmt


class JobExecutor:
    def __init__(
        self,
        *,
        media: MediaOps,
        transcriber: Transcriber | None = None,
        translator: Translator | None = None,
        partials: PartialPublisher | None = None,
        batches: BatchAggregator | None = None,
        artifacts_dir: Path | None = None,
        chunk_seconds: float | None = None,
        transcribe_concurrency: int | None = None,
    ) -> None:
        s = get_settings()
        self.media = media
        self.transcriber = transcriber
        self.translator = translator
        self.partials = partials
        self.batches = batches
        self.artifacts_dir = Path(artifacts_dir or s.artifacts_dir).resolve()
        self.chunk_seconds = float(
            chunk_seconds if chunk_seconds is not None else s.transcribe_chunk_seconds
        )
        self.transcribe_concurrency = max(
            1,
            int(
                transcribe_concurrency
                if transcribe_concurrency is not None
                else s.transcribe_concurrency
            ),
        )
        self._handlers: dict[ToolType, Handler] = {
            ToolType.CACHED_RESULT: self._cached_result,
            ToolType.VIDEO_TO_TRANSCRIPT: self._video_to_transcript,
            ToolType.VIDEO_TO_SUBTITLES: self._video_to_subtitles,
            ToolType.BATCH_VIDEO_TO_SUBTITLES: self._batch_video_to_subtitles,
            ToolType.TRANSLATE_SUBTITLES: self._translate_subtitles,
            ToolType.FIX_SUBTITLES: self._fix_subtitles,
            ToolType.CONVERT_SUBTITLES: self._convert_subtitles,
            ToolType.BURN_SUBTITLES: self._burn_subtitles,
            ToolType.COMPRESS_VIDEO: self._compress_video,
        }

    async def run(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        handler = self._handlers.get(job.tool_type)
        if handler is None:
            raise InvalidInput(f"Unsupported tool: {job.tool_type}")
        channel.emit(5, "Starting")
        out = await handler(job, channel)
        channel.emit(100, "Done")
        return out

    # --- helpers ---

    def _work_dir(self, job: Job) -> Path:
        d = self.artifacts_dir / job.id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _input(self, job: Job, idx: int = 0) -> Path:
        if len(job.inputs) <= idx:
            raise InvalidInput(f"{job.tool_type.value} needs {idx + 1} input file(s)")
        p = Path(job.inputs[idx])
        if not p.is_file():
            raise InvalidInput(f"Input file not found: {p.name}")
        return p

    def _name(self, job: Job, fallback: str) -> str:
        return job.original_name or (Path(job.inputs[0]).name if job.inputs else fallback)

    def _require_transcriber(self) -> Transcriber:
        if self.transcriber is None:
            raise InvalidInput("No transcription engine configured")
        return self.transcriber

    def _require_translator(self) -> Translator:
        if self.translator is None:
            raise InvalidInput("No translation engine configured")
        return self.translator

    def _trim_window(self, job: Job) -> tuple[float | None, float | None]:
        start = job.options.get("trim_start")
        end = job.options.get("trim_end")
        if start is None or end is None:
            return None, None
        start_f, end_f = float(start), float(end)
        if start_f < 0 or end_f <= start_f:
            raise InvalidInput("trim_end must be greater than trim_start")
        return start_f, end_f

    async def _validate_video(self, job: Job, video: Path, channel: ProgressChannel) -> float:
        """Returns the duration that will be processed (the trimmed window if any)."""
        channel.emit(10, "Validating")
        duration = await asyncio.to_thread(self.media.probe_duration, video)
        start, end = self._trim_window(job)
        if start is not None and end is not None:
            duration = max(0.0, min(duration, end) - start)
        limits = get_plan_limits(job.plan)
        if duration > limits.max_video_min * 60:
            raise DurationExceeded(
                f"Video is {duration / 60:.1f} min; the {job.plan.value} plan allows {limits.max_video_min} min"
            )
        job.duration_s = duration
        return duration

    def _bundle(self, job: Job, files: list[Path], zip_name: str) -> dict[str, Any]:
        if len(files) == 1:
            return {"fileName": files[0].name, "path": str(files[0])}
        archive = write_zip(self._work_dir(job) / zip_name, [(p, p.name) for p in files])
        return {
            "fileName": archive.name,
            "path": str(archive),
            "files": [p.name for p in files],
        }

    async def _transcribe(
        self,
        job: Job,
        video: Path,
        duration: float,
        channel: ProgressChannel,
        *,
        lo: float = 30.0,
        hi: float = 70.0,
    ) -> list[subs.Cue]:
        """
        Extract audio and transcribe. Long inputs are split into fixed windows
        transcribed concurrently; the contiguous finished prefix is published as
        a partial result after every chunk.
        """
        engine = self._require_transcriber()
        language = job.options.get("language")
        work = self._work_dir(job) / "audio"
        trim_start, trim_end = self._trim_window(job)
        offset = trim_start or 0.0
        channel.emit(lo, "Transcribing")

        if duration <= self.chunk_seconds or self.partials is None:
            wav = await asyncio.to_thread(
                self.media.extract_audio,
                video,
                work / "audio.wav",
                channel=channel,
                start_s=trim_start,
                end_s=trim_end,
            )
            cues = await asyncio.to_thread(engine.transcribe, wav, language=language, channel=channel)
            channel.emit(hi)
            return cues

        chunks = plan_chunks(duration, out_dir=work, chunk_seconds=self.chunk_seconds)
        prefix = ContiguousPrefix(len(chunks))
        writer = self.partials.writer(job.id)
        results: dict[int, list[subs.Cue]] = {}
        sem = asyncio.Semaphore(self.transcribe_concurrency)

        async def one(ch) -> None:
            async with sem:
                await asyncio.to_thread(
                    self.media.extract_audio,
                    video,
                    ch.wav_path,
                    channel=channel,
                    start_s=offset + ch.start_s,
                    end_s=offset + ch.end_s,
                )
                cues = await asyncio.to_thread(
                    engine.transcribe, ch.wav_path, language=language, channel=channel
                )
            shifted = [replace(c, start=c.start + ch.start_s, end=c.end + ch.start_s) for c in cues]
            results[ch.idx] = shifted
            merged = prefix.complete(ch.idx, _cues_to_segments(shifted))
            if merged is not None:
                writer.offer(merged)
            channel.emit(lo + (hi - lo) * len(results) / len(chunks))

        tasks = [asyncio.create_task(one(ch)) for ch in chunks]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            await writer.close_and_flush()
        logger.info("transcribe_chunks_done", job_id=job.id, chunks=len(chunks))
        merged_cues = [c for i in range(len(chunks)) for c in results[i]]
        return [replace(c, index=n) for n, c in enumerate(merged_cues, 1)]

    # --- handlers ---

    async def _cached_result(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        cached = dict(job.options.get("cached_result") or {})
        if not cached.get("path") or not Path(str(cached["path"])).exists():
            raise InvalidInput("Cached artifact is no longer available")
        cached["cached"] = True
        return ExecutionOutcome(result=cached)

    async def _video_to_transcript(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        video = self._input(job)
        duration = await self._validate_video(job, video, channel)
        cues = await self._transcribe(job, video, duration, channel)
        channel.emit(70, "Saving")
        out = self._work_dir(job) / output_filename(self._name(job, "video"), "_transcript", ".txt")
        await asyncio.to_thread(out.write_text, subs.render_transcript(cues), "utf-8")
        return ExecutionOutcome(
            result={"fileName": out.name, "path": str(out)},
            usage=usage_for(job, duration_s=duration),
            cache_path=out,
        )

    async def _video_to_subtitles(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        video = self._input(job)
        fmt = _subtitle_format(job.options)
        primary = str(job.options.get("language") or "en")
        extra = [str(x) for x in (job.options.get("additional_languages") or []) if str(x) != primary]
        if 1 + len(extra) > get_plan_limits(job.plan).max_languages:
            raise PlanNotAllowed(
                f"The {job.plan.value} plan allows {get_plan_limits(job.plan).max_languages} language(s)"
            )
        if extra:
            self._require_translator()
        duration = await self._validate_video(job, video, channel)
        cues = await self._transcribe(job, video, duration, channel, hi=50.0 if extra else 70.0)
        name = self._name(job, "video")
        work = self._work_dir(job)

        if not extra:
            channel.emit(70, "Saving")
            out = work / output_filename(name, "", f".{fmt}")
            await asyncio.to_thread(subs.write_subtitles, cues, out, fmt)
            return ExecutionOutcome(
                result={"fileName": out.name, "path": str(out)},
                usage=usage_for(job, duration_s=duration),
                cache_path=out,
            )

        translator = self._require_translator()
        files: dict[str, Path] = {primary: work / output_filename(name, f"_{primary}", f".{fmt}")}
        await asyncio.to_thread(subs.write_subtitles, cues, files[primary], fmt)
        for n, lang in enumerate(extra, 1):
            translated = await asyncio.to_thread(
                translator.translate, cues, target_language=lang, channel=channel
            )
            files[lang] = work / output_filename(name, f"_{lang}", f".{fmt}")
            await asyncio.to_thread(subs.write_subtitles, translated, files[lang], fmt)
            channel.emit(50 + 20 * n / len(extra), f"Translated {lang}")

        channel.emit(70, "Bundling")
        stem = Path(output_filename(name, "", ".zip")).stem
        result = await asyncio.to_thread(
            self._bundle, job, list(files.values()), f"{stem}_languages.zip"
        )
        result["multiLanguage"] = {lang: p.name for lang, p in files.items()}
        return ExecutionOutcome(
            result=result,
            usage=usage_for(job, duration_s=duration, extra_languages=len(extra)),
        )

    async def _batch_video_to_subtitles(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        if self.batches is None or not job.batch_id:
            raise InvalidInput("Batch item without a batch")
        video = self._input(job)
        fmt = _subtitle_format(job.options)
        duration = await self._validate_video(job, video, channel)
        cues = await self._transcribe(job, video, duration, channel)
        channel.emit(70, "Saving")
        out = self.batches.artifact_path(
            job.batch_id, self._name(job, "video"), position=job.batch_position, ext=f".{fmt}"
        )
        await asyncio.to_thread(subs.write_subtitles, cues, out, fmt)
        return ExecutionOutcome(
            result={"fileName": out.name, "path": str(out), "batchId": job.batch_id},
            usage=usage_for(job, duration_s=duration),
        )

    async def _translate_subtitles(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        translator = self._require_translator()
        src = self._input(job)
        target = str(job.options.get("target_language") or "").strip()
        if not target:
            raise InvalidInput("target_language is required")
        channel.emit(10, "Validating")
        cues, fmt = await asyncio.to_thread(subs.read_subtitles, src)
        channel.emit(30, "Translating")
        translated = await asyncio.to_thread(
            translator.translate, cues, target_language=target, channel=channel
        )
        channel.emit(70, "Saving")
        out = self._work_dir(job) / output_filename(self._name(job, "subtitles"), f"_{target}", f".{fmt}")
        await asyncio.to_thread(subs.write_subtitles, translated, out, fmt)
        return ExecutionOutcome(result={"fileName": out.name, "path": str(out)})

    async def _fix_subtitles(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        src = self._input(job)
        channel.emit(10, "Validating")
        cues, fmt = await asyncio.to_thread(subs.read_subtitles, src)
        channel.emit(30, "Fixing")
        fixed, issues = subs.fix_subtitles(cues)
        channel.emit(70, "Saving")
        out = self._work_dir(job) / output_filename(self._name(job, "subtitles"), "_fixed", f".{fmt}")
        await asyncio.to_thread(subs.write_subtitles, fixed, out, fmt)
        return ExecutionOutcome(
            result={
                "fileName": out.name,
                "path": str(out),
                "issues": [i.to_dict() for i in issues],
            }
        )

    async def _convert_subtitles(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        src = self._input(job)
        target = _subtitle_format(job.options, "target_format")
        channel.emit(10, "Validating")
        cues, _ = await asyncio.to_thread(subs.read_subtitles, src)
        channel.emit(70, "Saving")
        out = self._work_dir(job) / output_filename(self._name(job, "subtitles"), "", f".{target}")
        await asyncio.to_thread(subs.write_subtitles, cues, out, target)
        return ExecutionOutcome(result={"fileName": out.name, "path": str(out)})

    def _transcode_progress(self, channel: ProgressChannel) -> Callable[[float], None]:
        # transcoder percentage -> 20..90 job progress
        return lambda pct: channel.emit(20 + float(pct) * 0.7)

    async def _burn_subtitles(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        video = self._input(job, 0)
        subtitle_file = self._input(job, 1)
        duration = await self._validate_video(job, video, channel)
        channel.emit(20, "Burning subtitles")
        out = self._work_dir(job) / output_filename(self._name(job, "video"), "_subtitled", ".mp4")
        await asyncio.to_thread(
            self.media.burn_subtitles,
            video,
            subtitle_file,
            out,
            channel=channel,
            on_pct=self._transcode_progress(channel),
        )
        return ExecutionOutcome(
            result={"fileName": out.name, "path": str(out)},
            usage=usage_for(job, duration_s=duration),
        )

    async def _compress_video(self, job: Job, channel: ProgressChannel) -> ExecutionOutcome:
        video = self._input(job)
        level = str(job.options.get("compression_level") or "medium").strip().lower()
        if level not in COMPRESSION_CRF:
            raise InvalidInput(f"compression_level must be one of {sorted(COMPRESSION_CRF)}")
        duration = await self._validate_video(job, video, channel)
        channel.emit(20, "Compressing")
        out = self._work_dir(job) / output_filename(self._name(job, "video"), "_compressed", ".mp4")
        await asyncio.to_thread(
            self.media.compress_video,
            video,
            out,
            crf=COMPRESSION_CRF[level],
            channel=channel,
            on_pct=self._transcode_progress(channel),
        )
        return ExecutionOutcome(
            result={"fileName": out.name, "path": str(out)},
            usage=usage_for(job, duration_s=duration),
        )

    def cleanup_scratch(self, job: Job) -> None:
        """Remove intermediate audio once the job is terminal."""
        shutil.rmtree(self.artifacts_dir / job.id / "audio", ignore_errors=True)
