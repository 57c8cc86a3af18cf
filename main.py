from walph.cli import walph_main


if __name__ == "__main__":
	walph_main()
