#!/usr/bin/env python3
# Multi-word expression discovery by Gibbs sampling over word boundaries.
#
# Each gap between two tokens carries a mark (no boundary, boundary, fixed boundary).
# The units delimited by the marks are the customers of a Dirichlet process whose
# base measure is an add-one unigram model with a geometric length penalty.
# Every non-fixed gap is resampled once per sweep; the first ANN_ITERS sweeps are annealed.
#
# alpha:
#   small (e.g. 1) gives a smaller, denser lexicon of multi-word expressions
#   large (e.g. 1e6) gives a larger, sparser lexicon
# continue_prob:
#   high values favor shorter multi-word expressions

import sys
import os
import random
import math
import argparse
import datetime
import jsonpickle


NO_BOUNDARY    = 1
BOUNDARY       = 2
FIXED_BOUNDARY = 3
MARKS = (NO_BOUNDARY, BOUNDARY, FIXED_BOUNDARY)

# PARAMETERS
ALPHA         = 1.0		# Dirichlet process concentration; on the order of the expected lexicon size
CONTINUE_PROB = 0.5		# used in base_log_prob()
ANN_ITERS     = 100		# annealed sweeps
EXTRA_ITERS   = 100		# sweeps at temperature 1
MIN_COUNT     = 5		# lexicon output filters
MIN_LENGTH    = 1
SEED          = 1234
BREAKPROB     = 0.5		# used by initial_segmentation() in 'random' mode
REBASE_PERIOD = 10		# number of sweeps between dictionary stats (and state saves)
STATS_BUCKETS = 16
TEMP_CUTOFF   = 0.999	# temperatures at or above this are treated as 1
FLOAT_INF     = float("inf")

KEY_SEPARATOR  = " "
UNIT_SEPARATOR = "_"		# joins the tokens of a unit in the segmented corpus output


def join_key(tokens, i1, i2):
	if i2 - i1 > 1:
		return KEY_SEPARATOR.join(tokens[i1:i2])
	return tokens[i1]


def key_length(key):
	return len(key.split(KEY_SEPARATOR))


def surface_form(key):
	return "".join(key.split(KEY_SEPARATOR))


def log_add(a, b):
	# log(exp(a) + exp(b))
	if a < b:
		a, b = b, a
	if b == -FLOAT_INF:
		return a
	return a + math.log1p(math.exp(b - a))


def logistic(x):
	if x >= 0:
		return 1.0 / (1.0 + math.exp(-x))
	e = math.exp(x)
	return e / (1.0 + e)


def temperature_schedule(loopno, ann_iters):
	# linear ramp (1/ann_iters, 2/ann_iters, ..., 1), then held at 1
	if ann_iters <= 0:
		return 1.0
	temperature = float(loopno + 1) / ann_iters
	if temperature > 1.0:
		temperature = 1.0
	return temperature


def check_parameters(alpha, continue_prob, ann_iters=0, extra_iters=0):
	if not alpha > 0:
		sys.exit("Error in check_parameters(): alpha (= %s) must be > 0" % alpha)
	if not 0.0 < continue_prob < 1.0:
		sys.exit("Error in check_parameters(): continue_prob (= %s) must satisfy 0 < continue_prob < 1" % continue_prob)
	if ann_iters < 0 or extra_iters < 0:
		sys.exit("Error in check_parameters(): iteration counts (ann_iters = %s, extra_iters = %s) must not be negative" % (ann_iters, extra_iters))


def check_segmentation(tokens, segments):
	expected = max(len(tokens) - 1, 0)
	if len(segments) != expected:
		sys.exit("Error in check_segmentation(): %d tokens need %d boundary marks, got %d" % (len(tokens), expected, len(segments)))
	for n, mark in enumerate(segments):
		if mark not in MARKS:
			sys.exit("Error in check_segmentation(): unknown boundary mark %r at gap %d" % (mark, n))


## ---------------------------------------------------------------------------------------##
class LexiconTable:   # the restaurant: key is the space-joined unit, value is its count
## ---------------------------------------------------------------------------------------##
	def __init__(self):
		self.count_dictionary = {}
		self.totalcount       = 0		# sum of all counts; the N of the Dirichlet process

	def increment(self, key):
		if key not in self.count_dictionary:
			self.count_dictionary[key] = 1
		else:
			self.count_dictionary[key] += 1
		self.totalcount += 1

	def decrement(self, key):
		if key not in self.count_dictionary:
			return
		self.totalcount -= 1
		self.count_dictionary[key] -= 1
		if self.count_dictionary[key] <= 0:
			del self.count_dictionary[key]

	def lookup(self, key):
		return self.count_dictionary.get(key, 0)

	def total(self):
		return self.totalcount

	def items(self):
		return self.count_dictionary.items()

	def __len__(self):
		return len(self.count_dictionary)

	def __contains__(self, key):
		return key in self.count_dictionary


## ---------------------------------------------------------------------------------------##
class UnigramStats:   # corpus frequency of each token; filled once, never updated
## ---------------------------------------------------------------------------------------##
	def __init__(self, tokens):
		self.unigram_count_dictionary = {}
		for token in tokens:
			if token not in self.unigram_count_dictionary:
				self.unigram_count_dictionary[token] = 1
			else:
				self.unigram_count_dictionary[token] += 1

	def lookup(self, token):
		return self.unigram_count_dictionary.get(token, 0)

	def __len__(self):
		return len(self.unigram_count_dictionary)


## ---------------------------------------------------------------------------------------##
class MWESampler:
## ---------------------------------------------------------------------------------------##
	"""Owns the token sequence, the boundary marks and both count tables.

	segments[i] is the mark on the gap between tokens[i] and tokens[i+1].
	The lexicon always holds exactly the units of the current segmentation;
	it is only written when a gap changes state.
	"""
	def __init__(self, tokens, segments, alpha=ALPHA, continue_prob=CONTINUE_PROB,
				 ann_iters=ANN_ITERS, extra_iters=EXTRA_ITERS, seed=SEED, rng=None,
				 line_lengths=None, verbose=True):
		check_parameters(alpha, continue_prob, ann_iters, extra_iters)
		check_segmentation(tokens, segments)

		self.tokens        = tuple(tokens)
		self.segments      = list(segments)		# copy; the caller's list is not touched
		self.alpha         = float(alpha)
		self.continue_prob = float(continue_prob)
		self.ann_iters     = ann_iters
		self.extra_iters   = extra_iters
		self.line_lengths  = list(line_lengths) if line_lengths is not None else [len(self.tokens)]
		self.verbose       = verbose

		self.log_continue  = math.log(self.continue_prob)
		self.log_stop      = math.log(1.0 - self.continue_prob)

		self.rng           = rng if rng is not None else random.Random(seed)
		self.random_state  = None		# filled by __getstate__ so that it is preserved by jsonpickle
		self.loopno        = 0			# next sweep to run
		self.split_count   = 0			# state changes during the current sweep
		self.merge_count   = 0

		self.unigrams      = UnigramStats(self.tokens)
		self.lexicon       = LexiconTable()
		for (i1, i2) in self.units():
			self.lexicon.increment(join_key(self.tokens, i1, i2))


	def __getstate__(self):
		state = self.__dict__.copy()
		state["random_state"] = self.rng.getstate()
		del state["rng"]
		return state

	def __setstate__(self, state):
		self.__dict__.update(state)
		self.rng = random.Random()
		self.rng.setstate(self.random_state)


	def units(self):
		# (start, end) of each unit, left to right
		iEnd = 0
		while iEnd < len(self.tokens):
			iStart = iEnd
			while iEnd < len(self.tokens) - 1 and self.segments[iEnd] == NO_BOUNDARY:
				iEnd += 1
			iEnd += 1
			yield (iStart, iEnd)

	def unit_count(self):
		return sum(1 for _ in self.units())


	def span_bounds(self, i):
		# maximal unit ending at token i and maximal unit starting at token i+1
		iL = i - 1
		while iL >= 0 and self.segments[iL] == NO_BOUNDARY:
			iL -= 1
		iL += 1

		iR = i + 1
		while iR < len(self.tokens) - 1 and self.segments[iR] == NO_BOUNDARY:
			iR += 1
		iR += 1
		return (iL, i + 1, iR)


	def base_log_prob(self, i1, i2):
		# add-one unigram probability of each token, times a geometric length penalty
		Z = float(self.lexicon.total() + len(self.unigrams))
		logprob = 0.0
		for k in range(i1, i2):
			logprob += math.log((self.unigrams.lookup(self.tokens[k]) + 1) / Z)
		logprob += self.log_continue + (i2 - i1 - 1) * self.log_stop
		return logprob

	def log_predictive(self, count, i1, i2):
		# log(count + alpha * exp(base_log_prob)), without leaving log space
		log_new = math.log(self.alpha) + self.base_log_prob(i1, i2)
		if count <= 0:
			return log_new
		return log_add(math.log(count), log_new)


	def merge_probability(self, i, temperature=1.0):
		"""Probability that gap i is left without a boundary.

		Returns (prob_merge, mweL, mweR, mweLR). The counts of the current
		configuration are removed by local arithmetic only.
		"""
		iL, i1, iR = self.span_bounds(i)
		mweL  = join_key(self.tokens, iL, i1)
		mweR  = join_key(self.tokens, i1, iR)
		mweLR = mweL + KEY_SEPARATOR + mweR

		numL  = self.lexicon.lookup(mweL)
		numR  = self.lexicon.lookup(mweR)
		numLR = self.lexicon.lookup(mweLR)
		if self.segments[i] == BOUNDARY:
			numL -= 1
			numR -= 1
		else:
			numLR -= 1

		logNPlusAlpha = math.log(self.lexicon.total() + self.alpha)
		logprob0  = self.log_predictive(numLR, iL, iR) - logNPlusAlpha
		logprob1L = self.log_predictive(numL, iL, i1) - logNPlusAlpha
		logprob1R = self.log_predictive(numR, i1, iR) - logNPlusAlpha
		logprob1  = logprob1L + logprob1R

		if logprob0 == -FLOAT_INF and logprob1 == -FLOAT_INF:
			return (0.5, mweL, mweR, mweLR)

		# normalise, raise to the power T, renormalise: the log-odds scale by T
		log_odds = logprob1 - logprob0
		if temperature < TEMP_CUTOFF:
			log_odds *= temperature

		return (logistic(-log_odds), mweL, mweR, mweLR)


	def sample_boundary(self, i, temperature=1.0):
		if self.segments[i] == FIXED_BOUNDARY:
			return FIXED_BOUNDARY

		prob_merge, mweL, mweR, mweLR = self.merge_probability(i, temperature)
		insert_seg = self.rng.random() > prob_merge

		if self.segments[i] == NO_BOUNDARY and insert_seg:
			self.segments[i] = BOUNDARY
			self.lexicon.decrement(mweLR)
			self.lexicon.increment(mweL)
			self.lexicon.increment(mweR)
			self.split_count += 1
		elif self.segments[i] == BOUNDARY and not insert_seg:
			self.segments[i] = NO_BOUNDARY
			self.lexicon.decrement(mweL)
			self.lexicon.decrement(mweR)
			self.lexicon.increment(mweLR)
			self.merge_count += 1
		return self.segments[i]


	def sweep(self, temperature=1.0):
		# left to right; each update sees the marks and counts left by the previous one
		for i in range(len(self.tokens) - 1):
			if self.segments[i] == FIXED_BOUNDARY:
				continue
			self.sample_boundary(i, temperature)


	def step(self):
		temperature = temperature_schedule(self.loopno, self.ann_iters)
		self.split_count = 0
		self.merge_count = 0
		self.sweep(temperature)
		self.loopno += 1
		return temperature


	def run(self, outfile_stats=None, state_outfolder=None):
		total_iters = self.ann_iters + self.extra_iters
		while self.loopno < total_iters:
			loopno = self.loopno
			temperature = self.step()
			self.output_stats(outfile_stats, loopno, temperature)

			if loopno % REBASE_PERIOD == 0:
				self.output_dictionary_stats(outfile_stats)
			if state_outfolder is not None and (loopno + 1) % REBASE_PERIOD == 0:
				save_state_to_file(loopno, os.path.join(state_outfolder, "jsonpickle_" + str(loopno) + ".txt"), self)
		return self.lexicon


	def get_lexicon(self, min_count=MIN_COUNT, min_length=MIN_LENGTH):
		entries = []
		for key, count in self.lexicon.items():
			if count >= min_count and key_length(key) >= min_length:
				entries.append((surface_form(key), count))
		entries = sorted(entries, key = lambda x:x[0])					# secondary sort is alphabetical (ascending)
		entries = sorted(entries, key = lambda x:x[1], reverse=True)	# primary sort is by count (descending)
		return entries


	def dictionary_stats(self, buckets=STATS_BUCKETS):
		# types[n] and tokens[n] for units of n words; the last bucket takes all longer units
		types  = [0] * (buckets + 1)
		tokens = [0] * (buckets + 1)
		for key, count in self.lexicon.items():
			length = min(key_length(key), buckets)
			types[length]  += 1
			tokens[length] += count
		return types, tokens


	def segmented_lines(self):
		# units of each input line, tokens of a unit joined by UNIT_SEPARATOR
		lines = []
		line_ends = []
		end = 0
		for length in self.line_lengths:
			end += length
			line_ends.append(end)

		current = []
		lineno = 0
		for (i1, i2) in self.units():
			current.append(UNIT_SEPARATOR.join(self.tokens[i1:i2]))
			while lineno < len(line_ends) and i2 >= line_ends[lineno]:
				if current:
					lines.append(" ".join(current))
				current = []
				lineno += 1
		if current:
			lines.append(" ".join(current))
		return lines


	def output_stats(self, outfile, loopno, temperature):
		formatstring = "%4d   T: %5.3f   S:%6d   M:%6d   types:%7d   tokens:%8d"
		filled_string = formatstring % (loopno,
				temperature,
				self.split_count,
				self.merge_count,
				len(self.lexicon),
				self.lexicon.total())
		if self.verbose:
			print(filled_string)
		if outfile is not None:
			print(filled_string, file=outfile)

	def output_dictionary_stats(self, outfile):
		text = format_dictionary_stats(*self.dictionary_stats())
		if self.verbose:
			print(text)
		if outfile is not None:
			print(text, file=outfile)

	def dump_lexicon(self, outfile, min_count=MIN_COUNT, min_length=MIN_LENGTH):
		for (form, count) in self.get_lexicon(min_count, min_length):
			print(form, count, file=outfile)

	def output_corpuslines(self, outfile, loopno):
		print("----------------------------------------\nLoop number:", loopno, file=outfile)
		print("----------------------------------------", file=outfile)
		for line in self.segmented_lines():
			print(line, file=outfile)

## ---------------------------------------------------------------------------------------##
##		End of class MWESampler
## ---------------------------------------------------------------------------------------##


def format_dictionary_stats(types, tokens):
	buckets = len(types) - 1
	lengths = "\tLength:\t" + "\t".join("<%d>" % n for n in range(1, buckets + 1))
	typerow  = "\tTypes:\t"  + "\t".join(str(types[n])  for n in range(1, buckets + 1))
	tokenrow = "\tTokens:\t" + "\t".join(str(tokens[n]) for n in range(1, buckets + 1))
	return "\n".join([lengths, typerow, tokenrow])


def clean_line(line, casefold=True):
	if casefold:
		line = line.casefold()
	for punct in ".,;!?:)(":
		line = line.replace(punct, " " + punct + " ")		# these characters become separate tokens
	return line


def load_corpus(lines, clean=False):
	"""Concatenate the tokens of all non-empty lines.

	Returns (tokens, line_lengths). Gaps between lines get FIXED_BOUNDARY
	in initial_segmentation().
	"""
	tokens = []
	line_lengths = []
	for line in lines:
		if clean:
			line = clean_line(line)
		pieces_list = line.split()
		if len(pieces_list) == 0:
			continue
		tokens.extend(pieces_list)
		line_lengths.append(len(pieces_list))
	return tokens, line_lengths


def initial_segmentation(line_lengths, mode="split", rng=None):
	if mode not in ("split", "merged", "random"):
		sys.exit("Error in initial_segmentation(): unknown mode '%s'" % mode)
	if rng is None:
		rng = random.Random(SEED)

	segments = []
	for lineno, length in enumerate(line_lengths):
		if lineno > 0:
			segments.append(FIXED_BOUNDARY)
		for n in range(length - 1):
			if mode == "split":
				segments.append(BOUNDARY)
			elif mode == "merged":
				segments.append(NO_BOUNDARY)
			elif rng.random() < BREAKPROB:
				segments.append(BOUNDARY)
			else:
				segments.append(NO_BOUNDARY)
	return segments


def save_state_to_file(loopno, pkl_outfile_name, sampler):
	with open(pkl_outfile_name, mode='w', encoding="utf-8") as pkl_outfile:
		# Header for jsonpickle outfile
		i = datetime.datetime.now()
		print("# Date = " + i.strftime("%Y_%m_%d"), file=pkl_outfile)
		print("# Time = " + i.strftime("%H_%M"), file=pkl_outfile)
		print(file=pkl_outfile)

		print("#----------------------------------------\n# Loop number:", loopno, file=pkl_outfile)
		print("#----------------------------------------", file=pkl_outfile)
		serialstr = jsonpickle.encode(sampler, keys=True)
		print(serialstr, file=pkl_outfile)


def load_state_from_file(pkl_infile_name):
	with open(pkl_infile_name, encoding="utf-8") as pkl_infile:
		filelines = pkl_infile.readlines()
	serialstr = filelines[-1]
	sampler = jsonpickle.decode(serialstr, keys=True)
	assert isinstance(sampler, MWESampler)
	return sampler


def build_arg_parser():
	parser = argparse.ArgumentParser(description="Discover multi-word expressions by Gibbs sampling over word boundaries.")
	parser.add_argument("corpus", nargs="?", help="one sentence of whitespace-separated tokens per line")
	parser.add_argument("--alpha", type=float, default=None, help="default %s" % ALPHA)
	parser.add_argument("--continue_prob", type=float, default=None, help="default %s" % CONTINUE_PROB)
	parser.add_argument("--ann_iters", type=int, default=None, help="default %s" % ANN_ITERS)
	parser.add_argument("--iters", type=int, default=None, help="sweeps after annealing, default %s" % EXTRA_ITERS)
	parser.add_argument("--min_count", type=int, default=MIN_COUNT)
	parser.add_argument("--min_length", type=int, default=MIN_LENGTH)
	parser.add_argument("--init", choices=["split", "merged", "random"], default=None, help="default split")
	parser.add_argument("--seed", type=int, default=None, help="default %s" % SEED)
	parser.add_argument("--clean", action="store_true", help="casefold and split off punctuation")
	parser.add_argument("--outfolder", default=".")
	parser.add_argument("--save_state", action="store_true")
	parser.add_argument("--resume", help="jsonpickle state file to resume from")
	parser.add_argument("--quiet", action="store_true")
	return parser


RUN_OPTIONS = ("alpha", "continue_prob", "ann_iters", "iters", "init", "seed")		# fixed by a saved state
RUN_DEFAULTS = {"alpha": ALPHA, "continue_prob": CONTINUE_PROB, "ann_iters": ANN_ITERS,
				"iters": EXTRA_ITERS, "init": "split", "seed": SEED}


def main(argv=None):
	args = build_arg_parser().parse_args(argv)

	if args.resume:
		given = [name for name in RUN_OPTIONS if getattr(args, name) is not None]
		if args.corpus is not None or args.clean:
			given.insert(0, "corpus" if args.corpus is not None else "clean")
		if given:
			sys.exit("Error: --resume uses the saved configuration; remove " + ", ".join(given))
		if not os.path.isfile(args.resume):
			sys.exit("Error: state file " + args.resume + " does not exist.")
		print("State will be loaded from", args.resume)
		sampler = load_state_from_file(args.resume)
		sampler.verbose = not args.quiet
		print("Resume processing starting at loopno =", sampler.loopno, "with the saved configuration:",
			  "alpha =", sampler.alpha, " continue_prob =", sampler.continue_prob)
		stats_mode = 'a'
	else:
		for name in RUN_OPTIONS:
			if getattr(args, name) is None:
				setattr(args, name, RUN_DEFAULTS[name])
		if args.corpus is None:
			sys.exit("Error: a corpus file or --resume is required.")
		if not os.path.isfile(args.corpus):
			print("Warning: ", args.corpus, " does not exist.")
			sys.exit(1)

		print("\nData file: ", args.corpus)
		with open(args.corpus, encoding="utf-8") as infile:
			tokens, line_lengths = load_corpus(infile, clean=args.clean)
		print("Data file has", len(line_lengths), "lines,", len(tokens), "tokens.")

		rng = random.Random(args.seed)
		segments = initial_segmentation(line_lengths, args.init, rng)
		sampler = MWESampler(tokens, segments, alpha=args.alpha, continue_prob=args.continue_prob,
							 ann_iters=args.ann_iters, extra_iters=args.iters, rng=rng,
							 line_lengths=line_lengths, verbose=not args.quiet)
		print("Initial segmentation (" + args.init + ") has", sampler.lexicon.total(), "units,", len(sampler.lexicon), "distinct.")
		stats_mode = 'w'

	print("Number of iterations =", sampler.ann_iters + sampler.extra_iters, "(" + str(sampler.ann_iters), "annealed)")

	outfolder = args.outfolder
	os.makedirs(outfolder, exist_ok=True)
	state_outfolder = outfolder if args.save_state else None

	# a resumed run continues the stats file of the run it came from
	with open(os.path.join(outfolder, "stats.txt"), mode=stats_mode, encoding="utf-8") as outfile_stats:
		sampler.run(outfile_stats, state_outfolder)

	loopno = sampler.loopno - 1
	with open(os.path.join(outfolder, "lexicon.txt"), mode='w', encoding="utf-8") as outfile_lexicon:
		sampler.dump_lexicon(outfile_lexicon, args.min_count, args.min_length)
	with open(os.path.join(outfolder, "corpus_lines.txt"), mode='w', encoding="utf-8") as outfile_corpuslines:
		sampler.output_corpuslines(outfile_corpuslines, loopno)
	if args.save_state:
		save_state_to_file(loopno, os.path.join(outfolder, "jsonpickle_final.txt"), sampler)

	print("Lexicon:", len(sampler.get_lexicon(args.min_count, args.min_length)), "entries written to", os.path.join(outfolder, "lexicon.txt"))
	return 0


if __name__ == "__main__":
	sys.exit(main())
